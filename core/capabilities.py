"""Warden Plugin Host - Capability Validator

Gatekeeper between instantiation and the first real call into a guest. A
module is admitted only when its export table carries the full plugin ABI;
partial capability is never accepted.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Mapping, Tuple

from core.errors import MissingExportError
from core.runtime import ExportKind

MEMORY_EXPORT = "memory"
ALLOC_EXPORT = "plugin_alloc"
DEALLOC_EXPORT = "plugin_dealloc"
INFO_EXPORT = "plugin_info"
RECOGNIZE_EXPORT = "recognize"
ON_LOAD_EXPORT = "on_load"
ON_UNLOAD_EXPORT = "on_unload"

# Checked in order; the first gap is the one reported
REQUIRED_EXPORTS: Tuple[Tuple[str, ExportKind], ...] = (
    (MEMORY_EXPORT, ExportKind.MEMORY),
    (ALLOC_EXPORT, ExportKind.FUNC),
    (DEALLOC_EXPORT, ExportKind.FUNC),
    (INFO_EXPORT, ExportKind.FUNC),
    (RECOGNIZE_EXPORT, ExportKind.FUNC),
)

OPTIONAL_HOOKS: Tuple[str, ...] = (ON_LOAD_EXPORT, ON_UNLOAD_EXPORT)


@dataclass(frozen=True)
class GuestCapabilities:
    has_on_load: bool = False
    has_on_unload: bool = False


def validate_exports(export_kinds: Mapping[str, ExportKind]) -> GuestCapabilities:
    """Confirm the plugin ABI is present and report the optional hooks.

    An export with the right name but the wrong kind (say, a global called
    "memory") counts as missing.
    """
    for name, kind in REQUIRED_EXPORTS:
        if export_kinds.get(name) is not kind:
            raise MissingExportError(name)
    return GuestCapabilities(
        has_on_load=export_kinds.get(ON_LOAD_EXPORT) is ExportKind.FUNC,
        has_on_unload=export_kinds.get(ON_UNLOAD_EXPORT) is ExportKind.FUNC,
    )
