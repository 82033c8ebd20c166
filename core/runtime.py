"""Warden Plugin Host - Module Runtime Adapter

The only code that talks to wasmtime. Everything above this layer sees four
primitives: decode, instantiate, call, and bounds-checked memory read/write,
each failing with a typed PluginError.

Key properties:
- Only binary modules are accepted (wasmtime would otherwise parse text)
- One wasmtime.Store per instance: instances share no state
- Guest memory is never exposed as a buffer; every access is range checked
  against the current memory size before it reaches wasmtime
- Optional fuel metering bounds every guest call (runaway loops trap)
- WASI reactor modules get their _initialize export run at instantiation
"""

from __future__ import annotations
import logging
from enum import Enum
from typing import Dict, Mapping, Optional

import wasmtime

from core.errors import (
    InstantiationError,
    InvocationError,
    ModuleDecodeError,
    PluginMemoryError,
    sanitize_log,
)
from core.wasi_stubs import ImportStubTable

logger = logging.getLogger("warden.runtime")

WASM_MAGIC = b"\x00asm"
REACTOR_INIT_EXPORT = "_initialize"

_U32_MASK = 0xFFFFFFFF


class ExportKind(Enum):
    FUNC = "func"
    MEMORY = "memory"
    GLOBAL = "global"
    TABLE = "table"
    OTHER = "other"


def to_u32(value: int) -> int:
    """Guest pointers come back as signed i32; treat them as offsets."""
    return value & _U32_MASK


def to_i32(value: int) -> int:
    value &= _U32_MASK
    return value - 0x1_0000_0000 if value & 0x8000_0000 else value


def _export_kind(extern) -> ExportKind:
    if isinstance(extern, wasmtime.Func):
        return ExportKind.FUNC
    if isinstance(extern, wasmtime.Memory):
        return ExportKind.MEMORY
    if isinstance(extern, wasmtime.Global):
        return ExportKind.GLOBAL
    if isinstance(extern, wasmtime.Table):
        return ExportKind.TABLE
    return ExportKind.OTHER


class GuestInstance:
    """A live module instance with its own store, memory and exports."""

    def __init__(
        self,
        store: wasmtime.Store,
        externs: Dict[str, object],
        fuel_per_call: Optional[int] = None,
    ):
        self._store = store
        self._externs = dict(externs)
        self._export_kinds = {name: _export_kind(ext) for name, ext in self._externs.items()}
        self._fuel_per_call = fuel_per_call
        memory = self._externs.get("memory")
        self._memory = memory if isinstance(memory, wasmtime.Memory) else None

    @property
    def export_kinds(self) -> Mapping[str, ExportKind]:
        return dict(self._export_kinds)

    def has_function(self, name: str) -> bool:
        return self._export_kinds.get(name) is ExportKind.FUNC

    # --- Calls ---

    def call(self, name: str, *args: int):
        func = self._externs.get(name)
        if not isinstance(func, wasmtime.Func):
            raise InvocationError(name, "not an exported function")
        if self._fuel_per_call is not None:
            self._store.set_fuel(self._fuel_per_call)
        try:
            return func(self._store, *[to_i32(a) for a in args])
        except wasmtime.Trap as e:
            raise InvocationError(name, f"trap: {sanitize_log(e)}", e)
        except (wasmtime.WasmtimeError, TypeError, ValueError) as e:
            raise InvocationError(name, sanitize_log(e), e)

    def call_i32(self, name: str, *args: int) -> int:
        result = self.call(name, *args)
        if result is None:
            raise InvocationError(name, "No return value")
        if isinstance(result, (list, tuple)):
            raise InvocationError(name, f"expected one i32 result, got {len(result)} values")
        if not isinstance(result, int) or isinstance(result, bool):
            raise InvocationError(name, f"expected i32 result, got {type(result).__name__}")
        return result

    def call_void(self, name: str, *args: int) -> None:
        self.call(name, *args)

    # --- Memory ---

    def memory_size(self) -> int:
        if self._memory is None:
            raise PluginMemoryError("module exports no linear memory")
        return self._memory.data_len(self._store)

    def _check_range(self, op: str, offset: int, size: int) -> None:
        limit = self.memory_size()
        if offset < 0 or size < 0 or offset + size > limit:
            raise PluginMemoryError(
                f"{op} of {size} bytes at ptr={offset} is out of bounds "
                f"(memory size {limit})"
            )

    def read(self, offset: int, size: int) -> bytes:
        self._check_range("read", offset, size)
        try:
            return bytes(self._memory.read(self._store, offset, offset + size))
        except (IndexError, ValueError, wasmtime.WasmtimeError) as e:
            raise PluginMemoryError(
                f"Failed to read {size} bytes at ptr={offset}: {sanitize_log(e)}", e
            )

    def write(self, offset: int, data: bytes) -> None:
        self._check_range("write", offset, len(data))
        try:
            self._memory.write(self._store, bytes(data), offset)
        except (IndexError, ValueError, wasmtime.WasmtimeError) as e:
            raise PluginMemoryError(
                f"Failed to write {len(data)} bytes at ptr={offset}: {sanitize_log(e)}", e
            )


class WasmRuntime:
    """Decodes and instantiates modules on one shared wasmtime Engine."""

    def __init__(self, fuel_per_call: Optional[int] = None):
        config = wasmtime.Config()
        if fuel_per_call is not None:
            config.consume_fuel = True
        self._engine = wasmtime.Engine(config)
        self.fuel_per_call = fuel_per_call

    def decode(self, wasm_bytes: bytes) -> wasmtime.Module:
        if not isinstance(wasm_bytes, (bytes, bytearray, memoryview)):
            raise ModuleDecodeError(
                f"expected bytes, got {type(wasm_bytes).__name__}"
            )
        data = bytes(wasm_bytes)
        if not data.startswith(WASM_MAGIC):
            raise ModuleDecodeError("missing WASM magic header")
        try:
            return wasmtime.Module(self._engine, data)
        except wasmtime.WasmtimeError as e:
            raise ModuleDecodeError(sanitize_log(e), e)

    def instantiate(self, module: wasmtime.Module, imports: ImportStubTable) -> GuestInstance:
        store = wasmtime.Store(self._engine)
        if self.fuel_per_call is not None:
            store.set_fuel(self.fuel_per_call)

        linker = wasmtime.Linker(self._engine)
        imports.define(linker)
        try:
            instance = linker.instantiate(store, module)
        except (wasmtime.Trap, wasmtime.WasmtimeError) as e:
            raise InstantiationError(sanitize_log(e), e)

        exports = instance.exports(store)
        externs = {export.name: exports[export.name] for export in module.exports}
        guest = GuestInstance(store, externs, self.fuel_per_call)

        if guest.has_function(REACTOR_INIT_EXPORT):
            try:
                guest.call_void(REACTOR_INIT_EXPORT)
            except InvocationError as e:
                raise InstantiationError(f"{REACTOR_INIT_EXPORT} failed: {e.details}", e)
        return guest
