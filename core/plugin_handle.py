"""Warden Plugin Host - Plugin Handle

Wraps exactly one guest instance for its whole lifetime.

State machine:  UNINITIALIZED -> LOADED -> DISPOSED (terminal)

- Only the engine's load sequence creates handles and marks them LOADED
- recognize() is valid only while LOADED
- dispose() is idempotent; on_unload runs at most once, best-effort
- One lock per handle: the instance is never touched by two threads at once
"""

from __future__ import annotations
import logging
import threading
from enum import Enum
from typing import Optional

from core import marshaling
from core.capabilities import GuestCapabilities, ON_UNLOAD_EXPORT, RECOGNIZE_EXPORT
from core.errors import HandleStateError, InvocationError, PluginError, sanitize_log
from models.models import (
    DEFAULT_MAX_PAYLOAD_BYTES,
    PluginDescriptor,
    RecognitionRequest,
    RecognitionResponse,
)

logger = logging.getLogger("warden.handle")


class HandleState(Enum):
    UNINITIALIZED = "UNINITIALIZED"
    LOADED = "LOADED"
    DISPOSED = "DISPOSED"


class PluginHandle:
    """A loaded plugin. Owns its guest instance exclusively."""

    def __init__(
        self,
        descriptor: PluginDescriptor,
        source_name: str,
        instance,
        capabilities: GuestCapabilities,
        max_payload_bytes: int = DEFAULT_MAX_PAYLOAD_BYTES,
        release_buffers: bool = True,
        release_responses: bool = False,
    ):
        self.descriptor = descriptor
        self.source_name = source_name
        self.capabilities = capabilities
        self._instance = instance
        self._max_payload_bytes = max_payload_bytes
        self._release_buffers = release_buffers
        self._release_responses = release_responses
        self._state = HandleState.UNINITIALIZED
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"<PluginHandle id={self.id!r} source={self.source_name!r} state={self._state.value}>"

    @property
    def id(self) -> str:
        return self.descriptor.id

    @property
    def state(self) -> HandleState:
        return self._state

    @property
    def disposed(self) -> bool:
        return self._state is HandleState.DISPOSED

    @property
    def has_on_unload(self) -> bool:
        return self.capabilities.has_on_unload

    def mark_loaded(self) -> None:
        """UNINITIALIZED -> LOADED. Called by the engine right before registration."""
        with self._lock:
            if self._state is not HandleState.UNINITIALIZED:
                raise HandleStateError(
                    f"Plugin '{self.id}' cannot be loaded from state {self._state.value}"
                )
            self._state = HandleState.LOADED

    def _require_loaded(self, operation: str) -> None:
        if self._state is HandleState.DISPOSED:
            raise HandleStateError(f"Plugin '{self.id}' has been disposed ({operation})")
        if self._state is not HandleState.LOADED:
            raise HandleStateError(f"Plugin '{self.id}' is not loaded ({operation})")

    # --- Domain operation ---

    def recognize_raw(self, payload: bytes) -> bytes:
        """Send raw bytes to the guest's recognize export, return raw reply bytes."""
        with self._lock:
            self._require_loaded("recognize")
            return marshaling.exchange(
                self._instance,
                RECOGNIZE_EXPORT,
                payload,
                max_payload_bytes=self._max_payload_bytes,
                release_buffers=self._release_buffers,
                release_response=self._release_responses,
            )

    def recognize(self, request: RecognitionRequest) -> RecognitionResponse:
        raw = self.recognize_raw(request.encode())
        try:
            return RecognitionResponse.from_json(raw)
        except ValueError as e:
            raise InvocationError(
                RECOGNIZE_EXPORT, f"malformed response: {sanitize_log(e)}", e
            )

    # --- Teardown ---

    def dispose(self) -> bool:
        """Run on_unload (best-effort) and drop the instance.

        Returns True when this call performed the disposal, False when the
        handle was already disposed. Guest failures in on_unload are logged,
        never raised: teardown always completes.
        """
        with self._lock:
            if self._state is HandleState.DISPOSED:
                return False
            self._state = HandleState.DISPOSED
            instance, self._instance = self._instance, None

            if self.capabilities.has_on_unload and instance is not None:
                try:
                    instance.call_void(ON_UNLOAD_EXPORT)
                except PluginError as e:
                    logger.warning(
                        "Plugin %r: %s failed during dispose (ignored): %s",
                        sanitize_log(self.id), ON_UNLOAD_EXPORT, sanitize_log(e),
                    )
            logger.debug("Plugin %r disposed", sanitize_log(self.id))
            return True

    @property
    def instance(self) -> Optional[object]:
        """The guest instance, or None once disposed."""
        return self._instance
