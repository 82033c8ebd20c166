"""Warden Plugin Host - Error Taxonomy

One error kind per failure stage of load and dispatch. The set is closed:
PluginError may only be subclassed inside this module, so callers can match
exhaustively on ``PluginErrorKind``.

Kinds:
- MODULE_DECODE     bytes are not a valid module
- INSTANTIATION     module could not be linked/started against the stub table
- MISSING_EXPORT    a required export is absent (or has the wrong kind)
- INVOCATION        a guest function trapped, ran out of fuel, or returned junk
- MEMORY            a guest memory access or length prefix was rejected
- DESCRIPTOR_PARSE  plugin_info returned something that is not a descriptor
- DUPLICATE_PLUGIN  descriptor id already registered
"""

from __future__ import annotations
import re
from enum import Enum
from typing import Optional

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")


class PluginErrorKind(Enum):
    MODULE_DECODE = "MODULE_DECODE"
    INSTANTIATION = "INSTANTIATION"
    MISSING_EXPORT = "MISSING_EXPORT"
    INVOCATION = "INVOCATION"
    MEMORY = "MEMORY"
    DESCRIPTOR_PARSE = "DESCRIPTOR_PARSE"
    DUPLICATE_PLUGIN = "DUPLICATE_PLUGIN"


class PluginError(Exception):
    """Base for every failure a guest module can cause."""

    kind: PluginErrorKind

    def __init_subclass__(cls, **kwargs):
        super().__init_subclass__(**kwargs)
        if cls.__module__ != __name__:
            raise TypeError(
                f"PluginError is closed; {cls.__qualname__} cannot extend it "
                f"outside {__name__}"
            )

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        if cause is not None:
            self.__cause__ = cause


class ModuleDecodeError(PluginError):
    kind = PluginErrorKind.MODULE_DECODE

    def __init__(self, details: str, cause: Optional[BaseException] = None):
        super().__init__(f"Failed to decode WASM module: {details}", cause)
        self.details = details


class InstantiationError(PluginError):
    kind = PluginErrorKind.INSTANTIATION

    def __init__(self, details: str, cause: Optional[BaseException] = None):
        super().__init__(f"Failed to instantiate WASM module: {details}", cause)
        self.details = details


class MissingExportError(PluginError):
    kind = PluginErrorKind.MISSING_EXPORT

    def __init__(self, export_name: str):
        super().__init__(f"Required export not found: {export_name}")
        self.export_name = export_name


class InvocationError(PluginError):
    kind = PluginErrorKind.INVOCATION

    def __init__(
        self,
        function_name: str,
        details: str,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(f"Error invoking '{function_name}': {details}", cause)
        self.function_name = function_name
        self.details = details


class PluginMemoryError(PluginError):
    kind = PluginErrorKind.MEMORY

    def __init__(self, details: str, cause: Optional[BaseException] = None):
        super().__init__(f"Memory operation failed: {details}", cause)
        self.details = details


class DescriptorParseError(PluginError):
    kind = PluginErrorKind.DESCRIPTOR_PARSE

    def __init__(self, details: str, cause: Optional[BaseException] = None):
        super().__init__(f"Failed to parse plugin descriptor: {details}", cause)
        self.details = details


class DuplicatePluginError(PluginError):
    kind = PluginErrorKind.DUPLICATE_PLUGIN

    def __init__(self, plugin_id: str):
        super().__init__(f"Plugin with id '{plugin_id}' is already loaded")
        self.plugin_id = plugin_id


class HandleStateError(RuntimeError):
    """Raised when an operation reaches a handle that is not LOADED.

    A programmer error, not a guest failure: it sits outside the PluginError
    taxonomy and is never captured as a per-plugin outcome.
    """
    pass


def sanitize_log(s: object, max_len: int = 200) -> str:
    """Sanitize guest-controlled text before logging: CR/LF become spaces,
    other control characters are dropped, then truncate."""
    if not isinstance(s, str):
        s = str(s)
    s = s[:max_len].replace('\r', ' ').replace('\n', ' ')
    return _CONTROL_CHARS.sub('', s)
