import threading

import pytest

from conftest import make_guest
from core.errors import InstantiationError
from core.runtime import WasmRuntime
from core.wasi_stubs import EBADF, ESUCCESS, ImportStub, ImportStubTable, WASI_MODULE, WASI_STUBS

EXPECTED_NAMES = {
    "fd_write", "fd_read", "fd_close", "fd_seek", "fd_fdstat_get",
    "fd_prestat_get", "fd_prestat_dir_name", "random_get", "clock_time_get",
    "environ_sizes_get", "environ_get", "args_sizes_get", "args_get", "proc_exit",
}


def test_stub_table_contents():
    table = ImportStubTable()
    assert table.module_name == WASI_MODULE == "wasi_snapshot_preview1"
    assert set(table.names) == EXPECTED_NAMES
    assert len(table) == len(WASI_STUBS) == 14


def test_stub_return_values():
    table = ImportStubTable()
    assert table.invoke("fd_write", 1, 0, 0, 0) == ESUCCESS
    assert table.invoke("fd_prestat_get", 3, 0) == EBADF == 8
    assert table.invoke("fd_prestat_dir_name", 3, 0, 0) == EBADF
    assert table.invoke("proc_exit", 1) is None
    assert table.call_counts["fd_write"] == 1


def test_proc_exit_has_no_results():
    stub = next(s for s in ImportStubTable() if s.name == "proc_exit")
    assert stub.results == ()


def test_i64_params_are_typed():
    stubs = {s.name: s for s in WASI_STUBS}
    assert stubs["fd_seek"].params == ("i32", "i64", "i32", "i32")
    assert stubs["clock_time_get"].params == ("i32", "i64", "i32")


def test_duplicate_stub_names_rejected():
    with pytest.raises(ValueError):
        ImportStubTable([ImportStub("fd_write", ("i32",)), ImportStub("fd_write", ("i32",))])


def test_call_counts_are_exact_across_threads():
    table = ImportStubTable()
    start = threading.Barrier(8)

    def hammer():
        start.wait()
        for _ in range(2000):
            table.invoke("fd_write", 1, 0, 0, 0)

    workers = [threading.Thread(target=hammer) for _ in range(8)]
    for t in workers:
        t.start()
    for t in workers:
        t.join()
    assert table.call_counts["fd_write"] == 16000


def test_guest_calls_reach_stubs():
    table = ImportStubTable()
    runtime = WasmRuntime()
    guest = runtime.instantiate(runtime.decode(make_guest(on_load="wasi")), table)
    # on_load traps unless fd_prestat_get reports EBADF
    guest.call_void("on_load")
    assert table.call_counts["fd_prestat_get"] == 1
    assert table.call_counts["fd_write"] == 1
    assert table.call_counts["proc_exit"] == 1


def test_import_outside_stub_table_fails_instantiation():
    runtime = WasmRuntime()
    module = runtime.decode(make_guest(extra_imports=['(import "env" "host_secret" (func))']))
    with pytest.raises(InstantiationError):
        runtime.instantiate(module, ImportStubTable())


def test_wasi_import_with_wrong_signature_fails_instantiation():
    runtime = WasmRuntime()
    module = runtime.decode(make_guest(
        extra_imports=['(import "wasi_snapshot_preview1" "random_get" (func (param i64)))'],
    ))
    with pytest.raises(InstantiationError):
        runtime.instantiate(module, ImportStubTable())
