"""Warden Plugin Host - Command Line Entry Point

Loads recognizer plugins, prints what was admitted, optionally runs one
recognition request through them, then unloads everything.

- Structured logging to stderr (stdout carries only JSON results)
- One bad module never stops the others from loading
- Audit trail of lifecycle events (optional)
- Teardown always runs, even when dispatch fails
"""

from __future__ import annotations
import argparse
import dataclasses
import json
import logging
import os
import stat
import sys
from typing import Dict, List, Optional

from core.audit_log import AuditLog
from core.engine import PluginEngine, RecognitionOutcome
from core.errors import PluginError, sanitize_log
from core.fs_utils import discover_module_files, read_regular_file
from core.lifecycle import LoggingLifecycleListener
from models.models import EngineConfig, PluginDescriptor, RecognitionRequest

_MAX_REQUEST_BYTES = 2 * 1024 * 1024  # 2 MB cap


def configure_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Set up structured logging to stderr (stdout is reserved for results)."""
    handlers = [logging.StreamHandler(sys.stderr)]
    if log_file:
        # TOCTOU-safe log file open: O_NOFOLLOW, then fstat to reject non-regular files
        log_path = os.path.realpath(log_file)
        try:
            open_flags = os.O_WRONLY | os.O_CREAT | os.O_APPEND
            if hasattr(os, 'O_NOFOLLOW'):
                open_flags |= os.O_NOFOLLOW
            log_fd = os.open(log_path, open_flags, 0o644)
            fd_stat = os.fstat(log_fd)
            if not stat.S_ISREG(fd_stat.st_mode):
                os.close(log_fd)
                print(f"WARNING: --log-file {log_file!r} is not a regular file, ignoring",
                      file=sys.stderr)
            else:
                log_stream = os.fdopen(log_fd, "a")
                handlers.append(logging.StreamHandler(log_stream))
        except OSError as e:
            print(f"WARNING: --log-file {log_file!r} open failed: {e}, ignoring",
                  file=sys.stderr)

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        handlers=handlers,
    )


def build_config(args: argparse.Namespace) -> EngineConfig:
    """Config file first, then command-line overrides. Raises ValueError/OSError."""
    config = EngineConfig.from_json(args.config) if args.config else EngineConfig()
    overrides = {}
    if args.max_payload_bytes is not None:
        overrides["max_payload_bytes"] = args.max_payload_bytes
    if args.fuel is not None:
        overrides["fuel_per_call"] = args.fuel
    if overrides:
        config = dataclasses.replace(config, **overrides)
    return config


def load_all(engine: PluginEngine, paths: List[str], logger: logging.Logger) -> int:
    """Load each module file; failures are logged and skipped. Returns loaded count."""
    loaded = 0
    for path in paths:
        try:
            engine.load_plugin_file(path)
            loaded += 1
        except PluginError:
            # Already reported through the lifecycle listeners
            continue
        except (OSError, ValueError) as e:
            logger.error("Cannot read module %r: %s", path, sanitize_log(e))
    return loaded


def format_descriptor_table(descriptors: List[PluginDescriptor]) -> str:
    rows = [("ID", "NAME", "VERSION", "FORMATS")]
    for d in descriptors:
        formats = ",".join(sorted(d.supported_formats)) or "-"
        rows.append(tuple(sanitize_log(cell) for cell in (d.id, d.name, d.version, formats)))
    widths = [max(len(row[i]) for row in rows) for i in range(len(rows[0]))]
    return "\n".join(
        "  ".join(cell.ljust(widths[i]) for i, cell in enumerate(row)).rstrip()
        for row in rows
    )


def outcome_to_dict(outcome: RecognitionOutcome) -> Dict[str, object]:
    if outcome.error is not None:
        return {
            "error": {
                "kind": outcome.error.kind.value,
                "message": str(outcome.error),
            }
        }
    return {"response": outcome.response.to_dict()}


def read_request(path: str) -> RecognitionRequest:
    raw = read_regular_file(path, _MAX_REQUEST_BYTES, what="Request")
    return RecognitionRequest.from_json(raw)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Warden Plugin Host")
    parser.add_argument(
        "--plugins-dir", action="append", default=[],
        help="Directory containing *.wasm plugin modules (repeatable)",
    )
    parser.add_argument(
        "--plugin", action="append", default=[],
        help="Path to a single *.wasm plugin module (repeatable)",
    )
    parser.add_argument("--config", type=str, default=None, help="Engine config JSON file")
    parser.add_argument(
        "--max-payload-bytes", type=int, default=None,
        help="Upper bound for any length-prefixed guest payload (overrides config)",
    )
    parser.add_argument(
        "--fuel", type=int, default=None,
        help="Fuel granted to every guest call; enables metering (overrides config)",
    )
    parser.add_argument(
        "--log-level", type=str, default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: INFO)",
    )
    parser.add_argument("--log-file", type=str, default=None, help="Log file path (in addition to stderr)")
    parser.add_argument("--audit-dir", type=str, default=None, help="Lifecycle audit log directory")
    parser.add_argument(
        "--request", type=str, default=None,
        help="JSON file holding a recognition request to dispatch",
    )
    parser.add_argument(
        "--format", type=str, default=None,
        help="Only ask plugins that declare this model format",
    )
    parser.add_argument(
        "--all", action="store_true",
        help="Ask every plugin and report each outcome (default: first match)",
    )
    args = parser.parse_args(argv)

    if args.all and args.format:
        parser.error("--format applies to first-match dispatch only; drop it or --all")

    # --- Logging ---
    configure_logging(args.log_level, args.log_file)
    logger = logging.getLogger("warden.host")

    try:
        config = build_config(args)
    except (OSError, ValueError) as e:
        logger.error("Invalid engine configuration: %s", sanitize_log(e))
        return 1

    request = None
    if args.request:
        try:
            request = read_request(args.request)
        except (OSError, ValueError) as e:
            logger.error("Cannot read request %r: %s", args.request, sanitize_log(e))
            return 1

    engine = PluginEngine(config)
    engine.add_lifecycle_listener(LoggingLifecycleListener())
    if args.audit_dir:
        engine.add_lifecycle_listener(AuditLog(log_dir=args.audit_dir))

    with engine:
        paths = discover_module_files(args.plugins_dir) + list(args.plugin)
        loaded = load_all(engine, paths, logger)
        logger.info(
            "Warden host started: modules=%d loaded=%d payload_limit=%d fuel=%s",
            len(paths), loaded, config.max_payload_bytes,
            config.fuel_per_call if config.fuel_per_call is not None else "off",
        )
        if loaded == 0:
            logger.error("No plugins loaded")
            return 1

        print(format_descriptor_table(engine.get_descriptors()), file=sys.stderr)

        if request is None:
            return 0

        if args.all:
            outcomes = engine.recognize_all(request)
            result = {pid: outcome_to_dict(o) for pid, o in outcomes.items()}
        else:
            try:
                response = engine.recognize_first(request, fmt=args.format)
            except PluginError as e:
                logger.error("Recognition failed: [%s] %s", e.kind.value, sanitize_log(e))
                return 1
            result = response.to_dict() if response is not None else None

        print(json.dumps(result, indent=2, ensure_ascii=False))
    return 0


if __name__ == "__main__":
    sys.exit(main())
