"""Warden Plugin Host - Plugin Engine (Registry)

Owns the set of loaded plugins, keyed by descriptor id.

Load sequence (all-or-nothing, nothing is visible until step 7):
  1. decode          -> ModuleDecodeError
  2. instantiate     -> InstantiationError   (import stub table only)
  3. validate ABI    -> MissingExportError
  4. on_load hook    -> InvocationError      (failure aborts, unlike on_unload)
  5. plugin_info     -> DescriptorParseError (or Invocation/Memory errors)
  6. duplicate id    -> DuplicatePluginError (new instance discarded)
  7. register + notify loaded
Every abort notifies load-failed listeners with the exact error, then raises.

Key properties:
- No module-level registry: every engine is an independent value
- Registry enumeration is insertion order (deterministic dispatch)
- recognize_all isolates plugins: one failure never aborts the batch
- Registry mutation guarded by one RLock; each handle guards its instance
"""

from __future__ import annotations
import concurrent.futures
import logging
import os
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional

from core import marshaling
from core.capabilities import INFO_EXPORT, ON_LOAD_EXPORT, validate_exports
from core.errors import (
    DescriptorParseError,
    DuplicatePluginError,
    HandleStateError,
    PluginError,
    sanitize_log,
)
from core.fs_utils import read_module_file
from core.lifecycle import LifecycleListener
from core.plugin_handle import PluginHandle
from core.runtime import GuestInstance, WasmRuntime, to_u32
from core.wasi_stubs import ImportStubTable
from models.models import (
    EngineConfig,
    PluginDescriptor,
    RecognitionRequest,
    RecognitionResponse,
)

logger = logging.getLogger("warden.engine")


@dataclass(frozen=True)
class RecognitionOutcome:
    """Per-plugin result of recognize_all: a response or the error that replaced it."""
    plugin_id: str
    response: Optional[RecognitionResponse] = None
    error: Optional[PluginError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def recognized(self) -> bool:
        return self.response is not None and self.response.recognized


class PluginEngine:
    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        runtime: Optional[WasmRuntime] = None,
        imports: Optional[ImportStubTable] = None,
    ):
        self.config = config or EngineConfig()
        self._runtime = runtime or WasmRuntime(fuel_per_call=self.config.fuel_per_call)
        self._imports = imports or ImportStubTable()
        self._plugins: Dict[str, PluginHandle] = {}
        self._listeners: List[LifecycleListener] = []
        self._lock = threading.RLock()

    def __len__(self) -> int:
        return len(self._plugins)

    def __contains__(self, plugin_id: object) -> bool:
        return plugin_id in self._plugins

    def __enter__(self) -> PluginEngine:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.unload_all()

    @property
    def imports(self) -> ImportStubTable:
        return self._imports

    @property
    def plugin_ids(self) -> List[str]:
        with self._lock:
            return list(self._plugins)

    # --- Loading ---

    def load_plugin(self, wasm_bytes: bytes, source_name: str) -> PluginHandle:
        """Admit one module. Raises a PluginError on any failed stage."""
        try:
            handle = self._admit(wasm_bytes, source_name)
        except PluginError as e:
            self._notify_load_failed(source_name, e)
            raise

        logger.info(
            "Plugin %r v%r loaded from %r (on_load=%s, on_unload=%s)",
            sanitize_log(handle.id), sanitize_log(handle.descriptor.version),
            sanitize_log(source_name), handle.capabilities.has_on_load,
            handle.capabilities.has_on_unload,
        )
        self._notify("on_plugin_loaded", handle.descriptor)
        return handle

    def load_plugin_file(self, path: str) -> PluginHandle:
        """Read a module file from disk and load it under its basename."""
        wasm_bytes = read_module_file(path, self.config.max_module_bytes)
        return self.load_plugin(wasm_bytes, os.path.basename(path))

    def _admit(self, wasm_bytes: bytes, source_name: str) -> PluginHandle:
        module = self._runtime.decode(wasm_bytes)
        instance = self._runtime.instantiate(module, self._imports)
        capabilities = validate_exports(instance.export_kinds)

        if capabilities.has_on_load:
            instance.call_void(ON_LOAD_EXPORT)

        descriptor = self._read_descriptor(instance)

        handle = PluginHandle(
            descriptor=descriptor,
            source_name=source_name,
            instance=instance,
            capabilities=capabilities,
            max_payload_bytes=self.config.max_payload_bytes,
            release_buffers=self.config.release_buffers,
            release_responses=self.config.release_responses,
        )
        with self._lock:
            if descriptor.id in self._plugins:
                # The fresh instance is simply dropped; it was never registered
                raise DuplicatePluginError(descriptor.id)
            handle.mark_loaded()
            self._plugins[descriptor.id] = handle
        return handle

    def _read_descriptor(self, instance: GuestInstance) -> PluginDescriptor:
        info_ptr = to_u32(instance.call_i32(INFO_EXPORT))
        raw = marshaling.read_length_prefixed(
            instance, info_ptr, self.config.max_payload_bytes
        )
        if self.config.release_responses:
            marshaling.release(instance, info_ptr, marshaling.LENGTH_PREFIX_BYTES + len(raw))
        try:
            return PluginDescriptor.from_json(raw)
        except ValueError as e:
            raise DescriptorParseError(sanitize_log(e), e)

    # --- Unloading ---

    def unload_plugin(self, plugin_id: str) -> bool:
        """Remove and dispose a plugin. False (and no notification) if absent."""
        with self._lock:
            handle = self._plugins.pop(plugin_id, None)
        if handle is None:
            return False

        handle.dispose()
        logger.info("Plugin %r unloaded", sanitize_log(plugin_id))
        self._notify("on_plugin_unloaded", handle.descriptor)
        return True

    def unload_all(self) -> None:
        for plugin_id in self.plugin_ids:
            self.unload_plugin(plugin_id)

    # --- Lookup ---

    def get_plugin(self, plugin_id: str) -> Optional[PluginHandle]:
        with self._lock:
            return self._plugins.get(plugin_id)

    def get_descriptors(self) -> List[PluginDescriptor]:
        with self._lock:
            return [h.descriptor for h in self._plugins.values()]

    def _snapshot(self, fmt: Optional[str] = None) -> List[PluginHandle]:
        with self._lock:
            handles = list(self._plugins.values())
        if fmt is not None:
            handles = [h for h in handles if h.descriptor.supports(fmt)]
        return handles

    # --- Dispatch ---

    def recognize_first(
        self,
        request: RecognitionRequest,
        fmt: Optional[str] = None,
    ) -> Optional[RecognitionResponse]:
        """First positive recognition in registration order, or None.

        With ``fmt`` set, only plugins declaring that format are asked.
        Stops at the first match. A plugin failure propagates to the caller.
        """
        for handle in self._snapshot(fmt):
            response = handle.recognize(request)
            if response.recognized:
                logger.debug(
                    "Recognized by %r: family=%r",
                    sanitize_log(handle.id), sanitize_log(response.family),
                )
                return response
        return None

    def recognize_all(
        self,
        request: RecognitionRequest,
        max_workers: Optional[int] = None,
    ) -> Dict[str, RecognitionOutcome]:
        """Ask every plugin; each failure is captured in that plugin's outcome.

        With ``max_workers`` > 1 the plugins run in a thread pool. Result keys
        follow registration order either way. A plugin unloaded while the
        batch is running is left out of the result.
        """
        handles = self._snapshot()
        if max_workers is not None and max_workers > 1 and len(handles) > 1:
            with concurrent.futures.ThreadPoolExecutor(
                max_workers=max_workers, thread_name_prefix="warden-recognize"
            ) as pool:
                futures = [pool.submit(self._recognize_isolated, h, request) for h in handles]
                outcomes = [f.result() for f in futures]
        else:
            outcomes = [self._recognize_isolated(h, request) for h in handles]
        return {o.plugin_id: o for o in outcomes if o is not None}

    def _recognize_isolated(
        self, handle: PluginHandle, request: RecognitionRequest
    ) -> Optional[RecognitionOutcome]:
        try:
            return RecognitionOutcome(handle.id, response=handle.recognize(request))
        except PluginError as e:
            logger.warning(
                "Plugin %r recognize failed: [%s] %s",
                sanitize_log(handle.id), e.kind.value, sanitize_log(e),
            )
            return RecognitionOutcome(handle.id, error=e)
        except HandleStateError:
            logger.debug("Plugin %r unloaded mid-batch; skipped", sanitize_log(handle.id))
            return None

    # --- Listeners ---

    def add_lifecycle_listener(self, listener: LifecycleListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_lifecycle_listener(self, listener: LifecycleListener) -> bool:
        with self._lock:
            try:
                self._listeners.remove(listener)
                return True
            except ValueError:
                return False

    def _notify(self, event: str, *args) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                getattr(listener, event)(*args)
            except Exception:
                # Listeners are a side channel; they never alter control flow
                logger.exception("Lifecycle listener %r failed in %s", listener, event)

    def _notify_load_failed(self, source_name: str, error: PluginError) -> None:
        logger.error(
            "Plugin load failed (%s): [%s] %s",
            sanitize_log(source_name), error.kind.value, sanitize_log(error),
        )
        self._notify("on_plugin_load_failed", source_name, error)
