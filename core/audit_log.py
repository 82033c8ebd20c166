"""Warden Plugin Host - Lifecycle Audit Log

A LifecycleListener that appends one JSON line per lifecycle event.

Properties:
- Log rotation (configurable max file size and retention count)
- File locking to prevent concurrent write corruption
- Integrity chaining (each record includes hash of previous)
- Guest-controlled text truncated before it is persisted
- Thread-safe operations
"""

from __future__ import annotations
import hashlib
import json
import logging
import os
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

# Platform-specific file locking
if os.name != "nt":
    import fcntl
else:
    import msvcrt

from core.errors import PluginError
from core.lifecycle import LifecycleListener
from models.models import PluginDescriptor

logger = logging.getLogger("warden.audit")

# Defaults
DEFAULT_MAX_LOG_SIZE_BYTES = 10 * 1024 * 1024  # 10 MB
DEFAULT_MAX_LOG_FILES = 10
DEFAULT_MAX_FIELD_LENGTH = 2_000  # chars

EVENT_LOADED = "loaded"
EVENT_UNLOADED = "unloaded"
EVENT_LOAD_FAILED = "load_failed"


class AuditLog(LifecycleListener):
    def __init__(
        self,
        log_dir: str = "logs",
        max_log_size: int = DEFAULT_MAX_LOG_SIZE_BYTES,
        max_log_files: int = DEFAULT_MAX_LOG_FILES,
        max_field_length: int = DEFAULT_MAX_FIELD_LENGTH,
    ):
        self.log_dir = log_dir
        self.max_log_size = max_log_size
        self.max_log_files = max_log_files
        self.max_field_length = max_field_length
        self._lock = threading.Lock()
        self._last_hash: Optional[str] = None  # integrity chain

        os.makedirs(self.log_dir, exist_ok=True)
        self.current_log_path = self._get_new_log_path()

    def _get_new_log_path(self) -> str:
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        suffix = uuid.uuid4().hex[:8]
        return os.path.join(self.log_dir, f"plugins_{timestamp}_{suffix}.jsonl")

    def get_log_path(self) -> str:
        return self.current_log_path

    # --- LifecycleListener ---

    def on_plugin_loaded(self, descriptor: PluginDescriptor) -> None:
        self._persist({
            "event": EVENT_LOADED,
            "plugin_id": descriptor.id,
            "name": descriptor.name,
            "version": descriptor.version,
            "supported_formats": sorted(descriptor.supported_formats),
        })

    def on_plugin_unloaded(self, descriptor: PluginDescriptor) -> None:
        self._persist({
            "event": EVENT_UNLOADED,
            "plugin_id": descriptor.id,
        })

    def on_plugin_load_failed(self, source_name: str, error: PluginError) -> None:
        self._persist({
            "event": EVENT_LOAD_FAILED,
            "source": source_name,
            "error_kind": error.kind.value,
            "error": str(error),
        })

    # --- Persistence ---

    def _truncate_fields(self, record: Dict[str, Any]) -> Dict[str, Any]:
        """Prevent guest-supplied strings from bloating logs."""
        for key, value in record.items():
            if isinstance(value, str) and len(value) > self.max_field_length:
                record[key] = value[:self.max_field_length] + f"... [TRUNCATED, {len(value)} chars total]"
        return record

    def _compute_chain_hash(self, data_json: str) -> str:
        """Hash the record + previous hash for integrity chaining (full SHA-256)."""
        anchor = os.path.basename(self.current_log_path)
        chain_input = f"{anchor}:{self._last_hash or 'GENESIS'}:{data_json}"
        return hashlib.sha256(chain_input.encode('utf-8')).hexdigest()

    def _rotate_if_needed(self) -> None:
        """Rotate log file if current exceeds max size."""
        try:
            if os.path.exists(self.current_log_path):
                size = os.path.getsize(self.current_log_path)
                if size >= self.max_log_size:
                    self.current_log_path = self._get_new_log_path()
                    self._last_hash = None
                    self._cleanup_old_logs()
        except OSError as e:
            logger.error("Audit log rotation check failed: %s", e)

    def _cleanup_old_logs(self) -> None:
        """Remove oldest log files beyond retention limit."""
        try:
            log_files = sorted(
                [f for f in os.listdir(self.log_dir) if f.startswith("plugins_") and f.endswith(".jsonl")],
                reverse=True,
            )
            for old_file in log_files[self.max_log_files:]:
                os.remove(os.path.join(self.log_dir, old_file))
                logger.info("Removed old audit log file: %s", old_file)
        except OSError as e:
            logger.error("Audit log cleanup error: %s", e)

    def _persist(self, record: Dict[str, Any]) -> None:
        with self._lock:
            self._rotate_if_needed()

            record["timestamp"] = datetime.now(timezone.utc).isoformat()
            record = self._truncate_fields(record)
            data_json = json.dumps(record, sort_keys=True, default=str)

            chain_hash = self._compute_chain_hash(data_json)
            record["_chain_hash"] = chain_hash
            self._last_hash = chain_hash

            final_json = json.dumps(record, sort_keys=True, default=str)

            try:
                with open(self.current_log_path, "a", encoding="utf-8") as f:
                    # Cross-process file locking (Unix: flock, Windows: msvcrt)
                    if os.name != "nt":
                        fcntl.flock(f.fileno(), fcntl.LOCK_EX)
                    else:
                        f.seek(0)
                        msvcrt.locking(f.fileno(), msvcrt.LK_LOCK, max(len(final_json.encode("utf-8")) + 1, 1))
                        f.seek(0, os.SEEK_END)
                    try:
                        f.write(final_json + "\n")
                        f.flush()
                    finally:
                        if os.name != "nt":
                            fcntl.flock(f.fileno(), fcntl.LOCK_UN)
                        else:
                            f.seek(0)
                            msvcrt.locking(f.fileno(), msvcrt.LK_UNLCK, max(len(final_json.encode("utf-8")) + 1, 1))
            except OSError as e:
                logger.error("Failed to persist audit event %s: %s", record.get("event"), e)


def verify_chain(log_path: str) -> bool:
    """Recompute the integrity chain of one audit file."""
    anchor = os.path.basename(log_path)
    last_hash: Optional[str] = None
    with open(log_path, "r", encoding="utf-8") as f:
        for line in f:
            if not line.strip():
                continue
            record = json.loads(line)
            stored = record.pop("_chain_hash", None)
            data_json = json.dumps(record, sort_keys=True, default=str)
            expected = hashlib.sha256(
                f"{anchor}:{last_hash or 'GENESIS'}:{data_json}".encode('utf-8')
            ).hexdigest()
            if stored != expected:
                return False
            last_hash = stored
    return True
