"""Shared fixtures: WAT guest builder, in-memory fake guest, recording listener."""

import json
import os
import struct

import pytest
import wasmtime

from core.errors import InvocationError, PluginMemoryError
from core.lifecycle import LifecycleListener
from core.runtime import ExportKind
from models.models import RecognitionRequest, WeightStats

SAMPLE_PLUGIN_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'sample-plugin')

INFO_PTR = 1024
BAD_LENGTH_PTR = 2048
POSITIVE_PTR = 4096
NEGATIVE_PTR = 6144
HEAP_BASE = 8192
SLOT_SIZE = 2048

# "SPPF" read as a little-endian i32
_SPPF_I32 = 0x46505053

DEFAULT_INFO = {
    "id": "yolo-detector",
    "name": "YOLO Detector",
    "version": "0.1.0",
    "description": "Detects YOLO-family object detectors",
    "supportedFormats": ["onnx", "safetensors"],
    "metadata": {"author": "warden"},
}

DEFAULT_POSITIVE = {
    "recognized": True,
    "family": "YOLO",
    "variant": "v8",
    "task": "detection",
    "confidence": 0.92,
    "metadata": {"matched": "SPPF"},
}

DEFAULT_NEGATIVE = {"recognized": False, "confidence": 0.0}

_RECOGNIZE_BODIES = {
    "yolo": """
    (if (result i32) (call $has_sppf (local.get $ptr) (local.get $len))
      (then (i32.const {positive}))
      (else (i32.const {negative})))""",
    "positive": "(i32.const {positive})",
    "negative": "(i32.const {negative})",
    "echo": """
    (local.set $out (call $alloc (i32.add (local.get $len) (i32.const 4))))
    (i32.store (local.get $out) (local.get $len))
    (memory.copy (i32.add (local.get $out) (i32.const 4)) (local.get $ptr) (local.get $len))
    (local.get $out)""",
    "trap": "unreachable",
    "bad_length": "(i32.const {bad_length})",
    "out_of_bounds": "(i32.const 65534)",
    "loop": "(loop $spin (br $spin)) (i32.const 0)",
}

_HOOK_BODIES = {
    "ok": "nop",
    "trap": "unreachable",
    # Fails unless the prestat stub reports EBADF; exercises three stubs
    "wasi": """
    (if (i32.ne (call $fd_prestat_get (i32.const 3) (i32.const 0)) (i32.const 8))
      (then unreachable))
    (drop (call $fd_write (i32.const 1) (i32.const 0) (i32.const 0) (i32.const 0)))
    (call $proc_exit (i32.const 0))""",
    # Leaves a trace in ImportStubTable.call_counts["fd_write"]
    "write": "(drop (call $fd_write (i32.const 2) (i32.const 0) (i32.const 0) (i32.const 0)))",
}


def _wat_bytes(data: bytes) -> str:
    return "".join(f"\\{b:02x}" for b in data)


def encode_length_prefixed(payload: bytes) -> bytes:
    """Frame a payload the way a guest frames its replies."""
    return struct.pack("<i", len(payload)) + bytes(payload)


def _framed(data: bytes) -> str:
    return _wat_bytes(encode_length_prefixed(data))


def _json_bytes(value) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, str):
        return value.encode('utf-8')
    return json.dumps(value, separators=(',', ':')).encode('utf-8')


def make_guest_wat(
    info=None,
    recognize="yolo",
    positive=None,
    negative=None,
    on_load=None,
    on_unload=None,
    reactor=None,
    omit=(),
    memory_as_global=False,
    null_alloc=False,
    free_list=False,
    extra_imports=(),
) -> str:
    """WebAssembly text for a recognizer guest speaking the plugin ABI.

    ``info``/``positive``/``negative`` are dicts (JSON-encoded) or raw
    str/bytes placed verbatim into the guest's data segments. With
    ``free_list`` the allocator keeps the first block freed since its last
    reuse and hands it to the next plugin_alloc, whatever its size.
    """
    info_bytes = _json_bytes(DEFAULT_INFO if info is None else info)
    positive_bytes = _json_bytes(DEFAULT_POSITIVE if positive is None else positive)
    negative_bytes = _json_bytes(DEFAULT_NEGATIVE if negative is None else negative)
    for blob in (info_bytes, positive_bytes, negative_bytes):
        assert 0 < len(blob) <= SLOT_SIZE - 8, "payload does not fit its data slot"

    body = _RECOGNIZE_BODIES[recognize].format(
        positive=POSITIVE_PTR, negative=NEGATIVE_PTR, bad_length=BAD_LENGTH_PTR,
    )

    reuse = """
    (if (global.get $free)
      (then
        (local.set $p (global.get $free))
        (global.set $free (i32.const 0))
        (return (local.get $p))))""" if free_list else ""
    remember = """
    (if (i32.eqz (global.get $free)) (then (global.set $free (local.get $ptr))))""" if free_list else ""

    alloc_body = "(i32.const 0)" if null_alloc else reuse + """
    (local.set $p (global.get $heap))
    (global.set $heap (i32.add (global.get $heap) (local.get $size)))
    (local.get $p)"""

    exports = {
        "plugin_alloc": '(export "plugin_alloc" (func $alloc))',
        "plugin_dealloc": '(export "plugin_dealloc" (func $dealloc))',
        "plugin_info": '(export "plugin_info" (func $info))',
        "recognize": '(export "recognize" (func $recognize))',
    }
    if memory_as_global:
        exports["memory"] = '(global (export "memory") i32 (i32.const 0))'
    else:
        exports["memory"] = '(export "memory" (memory $mem))'

    hooks = []
    if on_load is not None:
        hooks.append(f'(func (export "on_load") {_HOOK_BODIES[on_load]})')
    if on_unload is not None:
        hooks.append(f'(func (export "on_unload") {_HOOK_BODIES[on_unload]})')
    if reactor is not None:
        init_body = "(global.set $inited (i32.const 1))" if reactor == "ok" else _HOOK_BODIES[reactor]
        hooks.append(f'(func (export "_initialize") {init_body})')

    lines = [
        "(module",
        '  (import "wasi_snapshot_preview1" "fd_write" (func $fd_write (param i32 i32 i32 i32) (result i32)))',
        '  (import "wasi_snapshot_preview1" "fd_prestat_get" (func $fd_prestat_get (param i32 i32) (result i32)))',
        '  (import "wasi_snapshot_preview1" "proc_exit" (func $proc_exit (param i32)))',
    ]
    lines.extend(f"  {imp}" for imp in extra_imports)
    lines += [
        "  (memory $mem 1)",
        f"  (global $heap (mut i32) (i32.const {HEAP_BASE}))",
        "  (global $frees (mut i32) (i32.const 0))",
        "  (global $free (mut i32) (i32.const 0))",
        "  (global $asks (mut i32) (i32.const 0))",
        "  (global $inited (mut i32) (i32.const 0))",
        f'  (data (i32.const {INFO_PTR}) "{_framed(info_bytes)}")',
        f'  (data (i32.const {BAD_LENGTH_PTR}) "\\ff\\ff\\ff\\7f")',
        f'  (data (i32.const {POSITIVE_PTR}) "{_framed(positive_bytes)}")',
        f'  (data (i32.const {NEGATIVE_PTR}) "{_framed(negative_bytes)}")',
        f"  (func $alloc (param $size i32) (result i32) (local $p i32) {alloc_body})",
        "  (func $dealloc (param $ptr i32) (param $size i32)",
        f"    (global.set $frees (i32.add (global.get $frees) (i32.const 1))){remember})",
        f"  (func $info (result i32) (i32.const {INFO_PTR}))",
        "  (func $has_sppf (param $ptr i32) (param $len i32) (result i32) (local $i i32)",
        "    (if (i32.lt_u (local.get $len) (i32.const 4)) (then (return (i32.const 0))))",
        "    (block $done",
        "      (loop $scan",
        "        (br_if $done (i32.gt_u (local.get $i) (i32.sub (local.get $len) (i32.const 4))))",
        f"        (if (i32.eq (i32.load (i32.add (local.get $ptr) (local.get $i))) (i32.const {_SPPF_I32}))",
        "          (then (return (i32.const 1))))",
        "        (local.set $i (i32.add (local.get $i) (i32.const 1)))",
        "        (br $scan)))",
        "    (i32.const 0))",
        "  (func $recognize (param $ptr i32) (param $len i32) (result i32) (local $out i32)",
        "    (global.set $asks (i32.add (global.get $asks) (i32.const 1)))",
        f"    {body})",
        '  (func (export "dealloc_count") (result i32) (global.get $frees))',
        '  (func (export "recognize_count") (result i32) (global.get $asks))',
        '  (func (export "is_initialized") (result i32) (global.get $inited))',
    ]
    lines.extend(f"  {e}" for name, e in exports.items() if name not in omit)
    lines.extend(f"  {h}" for h in hooks)
    lines.append(")")
    return "\n".join(lines)


def make_guest(**kwargs) -> bytes:
    """Binary module for make_guest_wat(**kwargs)."""
    return wasmtime.wat2wasm(make_guest_wat(**kwargs))


def sample_plugin_bytes(name: str) -> bytes:
    with open(os.path.join(SAMPLE_PLUGIN_DIR, name), 'r', encoding='utf-8') as f:
        return wasmtime.wat2wasm(f.read())


class FakeGuest:
    """Pure-Python stand-in for GuestInstance.

    Memory is a bytearray; every read is recorded so tests can assert what
    the host did (and did not) touch.
    """

    def __init__(self, size: int = 65536, alloc_ptr: int = 8192, response_ptr: int = 0,
                 fail_dealloc: bool = False):
        self.memory = bytearray(size)
        self.alloc_ptr = alloc_ptr
        self.response_ptr = response_ptr
        self.fail_dealloc = fail_dealloc
        self.reads = []
        self.calls = []

    @property
    def export_kinds(self):
        return {
            "memory": ExportKind.MEMORY,
            "plugin_alloc": ExportKind.FUNC,
            "plugin_dealloc": ExportKind.FUNC,
            "plugin_info": ExportKind.FUNC,
            "recognize": ExportKind.FUNC,
        }

    def place(self, ptr: int, data: bytes) -> None:
        self.memory[ptr:ptr + len(data)] = data

    def call_i32(self, name, *args):
        self.calls.append((name,) + args)
        if name == "plugin_alloc":
            return self.alloc_ptr
        return self.response_ptr

    def call_void(self, name, *args):
        self.calls.append((name,) + args)
        if name == "plugin_dealloc" and self.fail_dealloc:
            raise InvocationError(name, "trap: unreachable")

    def memory_size(self):
        return len(self.memory)

    def read(self, offset, size):
        self.reads.append((offset, size))
        if offset < 0 or size < 0 or offset + size > len(self.memory):
            raise PluginMemoryError(f"read of {size} bytes at ptr={offset} is out of bounds")
        return bytes(self.memory[offset:offset + size])

    def write(self, offset, data):
        if offset < 0 or offset + len(data) > len(self.memory):
            raise PluginMemoryError(f"write of {len(data)} bytes at ptr={offset} is out of bounds")
        self.memory[offset:offset + len(data)] = data


class RecordingListener(LifecycleListener):
    def __init__(self):
        self.events = []

    def on_plugin_loaded(self, descriptor):
        self.events.append(("loaded", descriptor.id))

    def on_plugin_unloaded(self, descriptor):
        self.events.append(("unloaded", descriptor.id))

    def on_plugin_load_failed(self, source_name, error):
        self.events.append(("load_failed", source_name, error))


@pytest.fixture
def listener():
    return RecordingListener()


@pytest.fixture
def yolo_request():
    return RecognitionRequest(
        total_params=3_157_200,
        layer_count=225,
        layer_types={"Conv": 64, "C2f": 8, "SPPF": 1},
        detected_blocks=["C2f", "SPPF", "Detect"],
        input_shape=[1, 3, 640, 640],
        output_shapes=[[1, 84, 8400]],
        weight_stats=WeightStats(mean=0.01, std=0.2, min=-1.5, max=1.7, sparsity=0.03),
        format="onnx",
        file_size_bytes=12_800_000,
        embedded_metadata={"producer": "pytorch"},
    )


@pytest.fixture
def empty_request():
    return RecognitionRequest(total_params=0, layer_count=0)
