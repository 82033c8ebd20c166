"""Warden Plugin Host - WASI Import Stub Table

Fixed, deterministic no-op implementations of the WASI preview1 imports a
typical toolchain links in, so guests compiled for WASI can instantiate
inside the sandbox.

Security properties:
- No stub reads or writes guest memory
- No real I/O, clock, randomness, environment or process control
- Every stub returns a constant errno; proc_exit returns nothing
- fd_prestat_* report EBADF (no preopened directories), which ends the
  libc preopen scan instead of letting it read garbage
- The table is the ONLY import source offered to a guest; anything else it
  imports fails instantiation
"""

from __future__ import annotations
import logging
import threading
from collections import Counter
from dataclasses import dataclass
from typing import Iterator, List, Optional, Sequence, Tuple

import wasmtime

logger = logging.getLogger("warden.wasi")

WASI_MODULE = "wasi_snapshot_preview1"

ESUCCESS = 0
EBADF = 8

I32 = "i32"
I64 = "i64"


@dataclass(frozen=True)
class ImportStub:
    name: str
    params: Tuple[str, ...]
    results: Tuple[str, ...] = (I32,)
    errno: Optional[int] = ESUCCESS

    def func_type(self) -> wasmtime.FuncType:
        return wasmtime.FuncType(
            [_val_type(p) for p in self.params],
            [_val_type(r) for r in self.results],
        )


def _val_type(name: str) -> wasmtime.ValType:
    if name == I32:
        return wasmtime.ValType.i32()
    if name == I64:
        return wasmtime.ValType.i64()
    raise ValueError(f"Unsupported stub value type: {name!r}")


WASI_STUBS: Tuple[ImportStub, ...] = (
    ImportStub("fd_write", (I32, I32, I32, I32)),
    ImportStub("fd_read", (I32, I32, I32, I32)),
    ImportStub("fd_close", (I32,)),
    ImportStub("fd_seek", (I32, I64, I32, I32)),
    ImportStub("fd_fdstat_get", (I32, I32)),
    ImportStub("fd_prestat_get", (I32, I32), errno=EBADF),
    ImportStub("fd_prestat_dir_name", (I32, I32, I32), errno=EBADF),
    ImportStub("random_get", (I32, I32)),
    ImportStub("clock_time_get", (I32, I64, I32)),
    ImportStub("environ_sizes_get", (I32, I32)),
    ImportStub("environ_get", (I32, I32)),
    ImportStub("args_sizes_get", (I32, I32)),
    ImportStub("args_get", (I32, I32)),
    ImportStub("proc_exit", (I32,), results=(), errno=None),
)


class ImportStubTable:
    """The import surface offered to every guest at instantiation."""

    def __init__(
        self,
        stubs: Sequence[ImportStub] = WASI_STUBS,
        module_name: str = WASI_MODULE,
    ):
        names = [s.name for s in stubs]
        if len(names) != len(set(names)):
            raise ValueError("Import stub names must be unique")
        self.module_name = module_name
        self._stubs = {s.name: s for s in stubs}
        # Diagnostics only; stubs never change behaviour based on history
        self.call_counts: Counter = Counter()
        self._counts_lock = threading.Lock()

    def __iter__(self) -> Iterator[ImportStub]:
        return iter(self._stubs.values())

    def __len__(self) -> int:
        return len(self._stubs)

    def __contains__(self, name: object) -> bool:
        return name in self._stubs

    @property
    def names(self) -> List[str]:
        return list(self._stubs)

    def invoke(self, name: str, *args) -> Optional[int]:
        """Run a stub by name. Arguments are accepted and ignored."""
        stub = self._stubs[name]
        with self._counts_lock:
            self.call_counts[name] += 1
        logger.debug("wasi stub %s%r -> %s", name, args, stub.errno)
        return stub.errno

    def define(self, linker: wasmtime.Linker) -> None:
        """Register every stub into a wasmtime Linker."""
        for stub in self._stubs.values():
            linker.define_func(
                self.module_name,
                stub.name,
                stub.func_type(),
                self._callback(stub.name),
            )

    def _callback(self, name: str):
        def _stub(*args):
            return self.invoke(name, *args)
        _stub.__name__ = f"wasi_{name}"
        return _stub
