"""Warden Plugin Host - Lifecycle Listeners

Side channel for load/unload/load-failure events. Listeners observe; they
never steer the engine, and a listener that raises cannot break a load or an
unload.
"""

from __future__ import annotations
import logging

from core.errors import PluginError, sanitize_log
from models.models import PluginDescriptor

logger = logging.getLogger("warden.lifecycle")


class LifecycleListener:
    """Override the events you care about; the defaults do nothing."""

    def on_plugin_loaded(self, descriptor: PluginDescriptor) -> None:
        pass

    def on_plugin_unloaded(self, descriptor: PluginDescriptor) -> None:
        pass

    def on_plugin_load_failed(self, source_name: str, error: PluginError) -> None:
        pass


class LoggingLifecycleListener(LifecycleListener):
    """Writes every lifecycle event to the warden.lifecycle logger."""

    def __init__(self, log: logging.Logger = logger):
        self._log = log

    def on_plugin_loaded(self, descriptor: PluginDescriptor) -> None:
        self._log.info(
            "Plugin loaded: %s (%s v%s) formats=%s",
            sanitize_log(descriptor.id),
            sanitize_log(descriptor.name),
            sanitize_log(descriptor.version),
            ",".join(sorted(descriptor.supported_formats)) or "-",
        )

    def on_plugin_unloaded(self, descriptor: PluginDescriptor) -> None:
        self._log.info("Plugin unloaded: %s", sanitize_log(descriptor.id))

    def on_plugin_load_failed(self, source_name: str, error: PluginError) -> None:
        self._log.error(
            "Plugin load failed (%s): [%s] %s",
            sanitize_log(source_name), error.kind.value, sanitize_log(error),
        )
