"""Warden Plugin Host - Memory Marshaling Protocol

Wire convention, identical on both sides of the sandbox boundary:

    [4-byte little-endian length][length raw bytes]

The host hands input to a guest by asking the guest's own allocator for a
buffer (plugin_alloc) and writing the raw payload there; the guest answers
with a pointer to a length-prefixed buffer. Pointers are trusted only for the
duration of the current call.

Security properties:
- Length prefixes outside 1..max_payload_bytes are rejected BEFORE any
  payload read (a garbage pointer must not drive a huge host allocation)
- Out-of-bounds reads/writes raise PluginMemoryError, never truncate
- A null or out-of-range allocation is a failed allocation
"""

from __future__ import annotations
import logging
import struct

from core.capabilities import ALLOC_EXPORT, DEALLOC_EXPORT
from core.errors import PluginError, PluginMemoryError, sanitize_log
from core.runtime import to_u32
from models.models import DEFAULT_MAX_PAYLOAD_BYTES

logger = logging.getLogger("warden.marshaling")

MAX_PAYLOAD_BYTES = DEFAULT_MAX_PAYLOAD_BYTES
LENGTH_PREFIX_BYTES = 4

# Signed on purpose: a length with the high bit set reads as negative
_LENGTH = struct.Struct("<i")


def write_input(instance, payload: bytes) -> int:
    """Copy payload into a guest-allocated buffer and return its offset."""
    if not payload:
        raise ValueError("payload must be non-empty")
    size = len(payload)
    ptr = to_u32(instance.call_i32(ALLOC_EXPORT, size))
    if ptr == 0:
        raise PluginMemoryError(f"{ALLOC_EXPORT}({size}) returned a null pointer")
    instance.write(ptr, payload)
    return ptr


def read_length_prefixed(
    instance,
    ptr: int,
    max_payload_bytes: int = MAX_PAYLOAD_BYTES,
) -> bytes:
    """Read a length-prefixed buffer the guest produced at ptr."""
    header = instance.read(ptr, LENGTH_PREFIX_BYTES)
    (length,) = _LENGTH.unpack(header)
    if length <= 0 or length > max_payload_bytes:
        raise PluginMemoryError(
            f"Invalid length value: {length} at ptr={ptr} "
            f"(allowed 1..{max_payload_bytes:,})"
        )
    return instance.read(ptr + LENGTH_PREFIX_BYTES, length)


def release(instance, ptr: int, size: int) -> bool:
    """Hand a buffer back to the guest allocator. Best-effort.

    Returns False when the guest's plugin_dealloc fails; the failure is
    logged and never replaces the result of the call that used the buffer.
    """
    try:
        instance.call_void(DEALLOC_EXPORT, ptr, size)
        return True
    except PluginError as e:
        logger.warning(
            "%s(ptr=%d, size=%d) failed: %s", DEALLOC_EXPORT, ptr, size, sanitize_log(e)
        )
        return False


def exchange(
    instance,
    function_name: str,
    payload: bytes,
    max_payload_bytes: int = MAX_PAYLOAD_BYTES,
    release_buffers: bool = True,
    release_response: bool = False,
) -> bytes:
    """Full round trip: write payload, call function_name(ptr, len), read reply.

    The input buffer came from plugin_alloc on the host's behalf and is
    released afterwards (release_buffers). The reply buffer belongs to the
    guest and may be static data, so it is handed to plugin_dealloc only
    when release_response is set.
    """
    ptr = write_input(instance, payload)
    try:
        result_ptr = to_u32(instance.call_i32(function_name, ptr, len(payload)))
        response = read_length_prefixed(instance, result_ptr, max_payload_bytes)
        if release_response:
            release(instance, result_ptr, LENGTH_PREFIX_BYTES + len(response))
        return response
    finally:
        if release_buffers:
            release(instance, ptr, len(payload))
