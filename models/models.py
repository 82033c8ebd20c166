"""Warden Plugin Host - Data Models

Records exchanged with guest plugins, plus engine configuration.

Wire format:
- Compact UTF-8 JSON with camelCase keys
- Encoding is deterministic: encode(decode(encode(x))) == encode(x)
- Unknown keys in incoming JSON are ignored
- Every decoder raises ValueError on malformed input; callers map that onto
  the plugin error taxonomy

Guest-supplied strings are kept verbatim and sanitized only where they are
logged; a descriptor id carrying control characters is rejected outright.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Union
import json
import math
import os
import re
import stat

DEFAULT_MAX_PAYLOAD_BYTES = 1_000_000          # Length-prefix upper bound
MAX_PAYLOAD_BYTES_CEILING = 256 * 1024 * 1024  # Hard ceiling for the bound itself
DEFAULT_MAX_MODULE_BYTES = 64 * 1024 * 1024    # Largest .wasm file read from disk
_MAX_CONFIG_BYTES = 64 * 1024

_CONTROL_CHARS = re.compile(r'[\x00-\x1f\x7f]')


def _load_json_object(raw: Union[str, bytes, bytearray], what: str) -> Dict[str, Any]:
    """Decode raw JSON into a dict, turning every failure into ValueError."""
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = bytes(raw).decode('utf-8')
        except UnicodeDecodeError:
            raise ValueError(f"{what} is not valid UTF-8")
    try:
        data = json.loads(raw)
    except RecursionError:
        raise ValueError(f"Recursion bomb in {what} (deeply nested JSON)")
    except json.JSONDecodeError as e:
        raise ValueError(f"{what} is not valid JSON: {e.msg} at pos {e.pos}")
    if not isinstance(data, dict):
        raise ValueError(f"{what} must be a JSON object, got {type(data).__name__}")
    return data


def _dump(data: Dict[str, Any]) -> str:
    return json.dumps(data, ensure_ascii=False, separators=(',', ':'))


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value: Any) -> bool:
    return (isinstance(value, (int, float)) and not isinstance(value, bool)
            and math.isfinite(value))


def _str_field(data: Dict[str, Any], key: str, default: Optional[str] = None,
               required: bool = False) -> Optional[str]:
    if key not in data or data[key] is None:
        if required:
            raise ValueError(f"Missing required field {key!r}")
        return default
    value = data[key]
    if not isinstance(value, str):
        raise ValueError(f"Field {key!r} must be a string, got {type(value).__name__}")
    return value


def _str_map(value: Any, key: str) -> Dict[str, str]:
    if not isinstance(value, dict):
        raise ValueError(f"Field {key!r} must be an object, got {type(value).__name__}")
    for k, v in value.items():
        if not isinstance(v, str):
            raise ValueError(
                f"Field {key!r} entry {k!r} must be a string, got {type(v).__name__}"
            )
    return dict(value)


def _str_list(value: Any, key: str) -> List[str]:
    if not isinstance(value, list):
        raise ValueError(f"Field {key!r} must be a list, got {type(value).__name__}")
    for i, item in enumerate(value):
        if not isinstance(item, str):
            raise ValueError(f"Field {key!r}[{i}] must be a string, got {type(item).__name__}")
    return list(value)


def _int_list(value: Any, key: str) -> List[int]:
    if not isinstance(value, list):
        raise ValueError(f"Field {key!r} must be a list, got {type(value).__name__}")
    for i, item in enumerate(value):
        if not _is_int(item):
            raise ValueError(f"Field {key!r}[{i}] must be an integer, got {type(item).__name__}")
    return list(value)


@dataclass(frozen=True)
class PluginDescriptor:
    """Identity and capabilities a plugin reports from plugin_info().

    Immutable once parsed. ``id`` is the registry key.
    """
    id: str
    name: str
    version: str
    description: str = ""
    supported_formats: FrozenSet[str] = frozenset()
    metadata: Mapping[str, str] = field(default_factory=dict, hash=False)

    def __post_init__(self):
        for attr in ('id', 'name', 'version', 'description'):
            value = getattr(self, attr)
            if not isinstance(value, str):
                raise ValueError(
                    f"Descriptor field '{attr}' must be a string, got {type(value).__name__}"
                )

        if not self.id.strip():
            raise ValueError("Descriptor id cannot be empty")
        # Registry key: refused, never rewritten
        if _CONTROL_CHARS.search(self.id):
            raise ValueError("Descriptor id must not contain control characters")

        object.__setattr__(self, 'supported_formats', frozenset(self.supported_formats))
        object.__setattr__(self, 'metadata', MappingProxyType(dict(self.metadata)))

    def supports(self, fmt: str) -> bool:
        return fmt in self.supported_formats

    @classmethod
    def from_json(cls, raw: Union[str, bytes, bytearray]) -> PluginDescriptor:
        """Parse descriptor JSON as returned by a guest's plugin_info export.

        Expected JSON format:
        {
            "id": "yolo-detector",
            "name": "YOLO Detector",
            "version": "0.1.0",
            "description": "optional",
            "supportedFormats": ["onnx", "gguf"],
            "metadata": {"author": "..."}
        }
        """
        data = _load_json_object(raw, "plugin descriptor")
        return cls(
            id=_str_field(data, 'id', required=True),
            name=_str_field(data, 'name', required=True),
            version=_str_field(data, 'version', required=True),
            description=_str_field(data, 'description', default=""),
            supported_formats=frozenset(_str_list(data.get('supportedFormats', []), 'supportedFormats')),
            metadata=_str_map(data.get('metadata', {}), 'metadata'),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "supportedFormats": sorted(self.supported_formats),
            "metadata": dict(self.metadata),
        }

    def to_json(self) -> str:
        return _dump(self.to_dict())


@dataclass
class WeightStats:
    mean: float = 0.0
    std: float = 0.0
    min: float = 0.0
    max: float = 0.0
    sparsity: float = 0.0

    @classmethod
    def from_dict(cls, data: Any) -> WeightStats:
        if not isinstance(data, dict):
            raise ValueError(f"weightStats must be an object, got {type(data).__name__}")
        values = {}
        for key in ('mean', 'std', 'min', 'max', 'sparsity'):
            raw = data.get(key, 0.0)
            if not _is_number(raw):
                raise ValueError(f"weightStats.{key} must be a finite number")
            values[key] = float(raw)
        return cls(**values)

    def to_dict(self) -> Dict[str, float]:
        return {
            "mean": float(self.mean),
            "std": float(self.std),
            "min": float(self.min),
            "max": float(self.max),
            "sparsity": float(self.sparsity),
        }


@dataclass
class RecognitionRequest:
    """Statistics extracted from a model artifact, sent to recognize()."""
    total_params: int
    layer_count: int
    layer_types: Dict[str, int] = field(default_factory=dict)
    detected_blocks: List[str] = field(default_factory=list)
    input_shape: List[int] = field(default_factory=list)
    output_shapes: List[List[int]] = field(default_factory=list)
    weight_stats: Optional[WeightStats] = None
    format: str = ""
    file_size_bytes: int = 0
    embedded_metadata: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        if not _is_int(self.total_params) or self.total_params < 0:
            raise ValueError("total_params must be a non-negative integer")
        if not _is_int(self.layer_count) or self.layer_count < 0:
            raise ValueError("layer_count must be a non-negative integer")
        if not _is_int(self.file_size_bytes) or self.file_size_bytes < 0:
            raise ValueError("file_size_bytes must be a non-negative integer")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalParams": self.total_params,
            "layerCount": self.layer_count,
            "layerTypes": dict(self.layer_types),
            "detectedBlocks": list(self.detected_blocks),
            "inputShape": list(self.input_shape),
            "outputShapes": [list(s) for s in self.output_shapes],
            "weightStats": self.weight_stats.to_dict() if self.weight_stats else None,
            "format": self.format,
            "fileSizeBytes": self.file_size_bytes,
            "embeddedMetadata": dict(self.embedded_metadata),
        }

    def to_json(self) -> str:
        return _dump(self.to_dict())

    def encode(self) -> bytes:
        return self.to_json().encode('utf-8')

    @classmethod
    def from_json(cls, raw: Union[str, bytes, bytearray]) -> RecognitionRequest:
        data = _load_json_object(raw, "recognition request")

        for key in ('totalParams', 'layerCount'):
            if key not in data:
                raise ValueError(f"Missing required field {key!r}")

        layer_types = data.get('layerTypes', {})
        if not isinstance(layer_types, dict) or not all(_is_int(v) for v in layer_types.values()):
            raise ValueError("layerTypes must be an object of integer counts")

        output_shapes = data.get('outputShapes', [])
        if not isinstance(output_shapes, list):
            raise ValueError("outputShapes must be a list")

        raw_stats = data.get('weightStats')
        fmt = _str_field(data, 'format', default="")

        try:
            return cls(
                total_params=data['totalParams'],
                layer_count=data['layerCount'],
                layer_types=dict(layer_types),
                detected_blocks=_str_list(data.get('detectedBlocks', []), 'detectedBlocks'),
                input_shape=_int_list(data.get('inputShape', []), 'inputShape'),
                output_shapes=[_int_list(s, 'outputShapes') for s in output_shapes],
                weight_stats=WeightStats.from_dict(raw_stats) if raw_stats is not None else None,
                format=fmt,
                file_size_bytes=data.get('fileSizeBytes', 0),
                embedded_metadata=_str_map(data.get('embeddedMetadata', {}), 'embeddedMetadata'),
            )
        except TypeError as e:
            raise ValueError(f"Invalid recognition request: {e}")


@dataclass
class RecognitionResponse:
    """Classification a plugin returns from recognize()."""
    recognized: bool
    family: Optional[str] = None
    variant: Optional[str] = None
    task: Optional[str] = None
    confidence: float = 0.0
    metadata: Optional[Dict[str, str]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recognized": self.recognized,
            "family": self.family,
            "variant": self.variant,
            "task": self.task,
            "confidence": float(self.confidence),
            "metadata": dict(self.metadata) if self.metadata is not None else None,
        }

    def to_json(self) -> str:
        return _dump(self.to_dict())

    @classmethod
    def from_json(cls, raw: Union[str, bytes, bytearray]) -> RecognitionResponse:
        data = _load_json_object(raw, "recognition response")

        if 'recognized' not in data:
            raise ValueError("Missing required field 'recognized'")
        recognized = data['recognized']
        if not isinstance(recognized, bool):
            raise ValueError(
                f"Field 'recognized' must be a boolean, got {type(recognized).__name__}"
            )

        confidence = data.get('confidence', 0.0)
        if not _is_number(confidence):
            raise ValueError("Field 'confidence' must be a finite number")

        metadata = data.get('metadata')
        return cls(
            recognized=recognized,
            family=_str_field(data, 'family'),
            variant=_str_field(data, 'variant'),
            task=_str_field(data, 'task'),
            confidence=float(confidence),
            metadata=_str_map(metadata, 'metadata') if metadata is not None else None,
        )


@dataclass
class EngineConfig:
    """Tunables for a PluginEngine."""

    # Upper bound for any length-prefixed payload read out of a guest
    max_payload_bytes: int = DEFAULT_MAX_PAYLOAD_BYTES

    # wasmtime fuel granted before every guest call (None = unmetered)
    fuel_per_call: Optional[int] = None

    # Largest module file accepted from disk
    max_module_bytes: int = DEFAULT_MAX_MODULE_BYTES

    # Hand the host-allocated input buffer back through plugin_dealloc after each call
    release_buffers: bool = True

    # Also free guest-owned reply and descriptor buffers (only for guests
    # whose plugin_info/recognize return freshly allocated memory)
    release_responses: bool = False

    def __post_init__(self):
        if not _is_int(self.max_payload_bytes):
            raise ValueError("max_payload_bytes must be an integer")
        if self.max_payload_bytes < 1 or self.max_payload_bytes > MAX_PAYLOAD_BYTES_CEILING:
            raise ValueError(
                f"max_payload_bytes must be 1-{MAX_PAYLOAD_BYTES_CEILING:,}"
            )

        if self.fuel_per_call is not None:
            if not _is_int(self.fuel_per_call) or self.fuel_per_call <= 0:
                raise ValueError("fuel_per_call must be a positive integer or None")

        if not _is_int(self.max_module_bytes) or self.max_module_bytes <= 0:
            raise ValueError("max_module_bytes must be a positive integer")

        for flag in ('release_buffers', 'release_responses'):
            if not isinstance(getattr(self, flag), bool):
                raise ValueError(f"{flag} must be a boolean")

    @classmethod
    def from_json(cls, config_path: str) -> EngineConfig:
        """Load an EngineConfig from a JSON file.

        Expected JSON format:
        {
            "max_payload_bytes": 1000000,
            "fuel_per_call": 50000000,
            "max_module_bytes": 67108864,
            "release_buffers": true,
            "release_responses": false
        }
        """
        with open(config_path, 'rb') as f_raw:
            fd_stat = os.fstat(f_raw.fileno())
            if not stat.S_ISREG(fd_stat.st_mode):
                raise ValueError(
                    f"Engine config is not a regular file (mode={oct(fd_stat.st_mode)})"
                )
            raw = f_raw.read(_MAX_CONFIG_BYTES + 1)
        if len(raw) > _MAX_CONFIG_BYTES:
            raise ValueError(
                f"Engine config too large (limit {_MAX_CONFIG_BYTES:,} bytes)"
            )

        data = _load_json_object(raw, f"engine config {config_path!r}")
        known = {
            'max_payload_bytes', 'fuel_per_call', 'max_module_bytes',
            'release_buffers', 'release_responses',
        }
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown engine config keys: {', '.join(unknown)}")
        return cls(**data)
