# dynfix/models/description.py
"""
Network description: the ordered, immutable layer list a forward runner builds a network from.

On-disk format (UTF-8 JSON):
{
  "name": "lenet",
  "input_shape": [1, 28, 28],
  "layers": [
    {"name": "conv1", "type": "Convolution",
     "params": {"in_channels": 1, "out_channels": 20, "kernel_size": 5},
     "quantization_param": {"precision": "dynamic_fixed_point",
                            "bw_params": 8, "fl_params": 5}},      # optional; unset fields omitted
    {"name": "relu1", "type": "ReLU", "params": {}},
    ...
  ]
}

Editing never happens in place: `replace_layers` returns a new description,
so a candidate can never leak into another candidate or into the base network.
"""

from __future__ import annotations

import copy
import json
import os
import tempfile
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple, Union

from dynfix.errors import EngineError

# Full-precision layer type -> quantized variant
QUANTIZED_TYPES: Dict[str, str] = {
    "Convolution": "QuantConvolution",
    "InnerProduct": "QuantInnerProduct",
}
_BASE_TYPES: Dict[str, str] = {v: k for k, v in QUANTIZED_TYPES.items()}

DYNAMIC_FIXED_POINT = "dynamic_fixed_point"


def base_type(layer_type: str) -> str:
    """Declared full-precision type of a layer, whether or not it has been quantized already."""
    return _BASE_TYPES.get(layer_type, layer_type)


def quantized_type(layer_type: str) -> str:
    base = base_type(layer_type)
    if base not in QUANTIZED_TYPES:
        raise ValueError(f"Layer type '{layer_type}' has no quantized variant")
    return QUANTIZED_TYPES[base]


@dataclass(frozen=True)
class QuantizationParam:
    """Per-layer dynamic fixed-point formats. None means the quantity stays full precision."""

    precision: str = DYNAMIC_FIXED_POINT
    bw_params: Optional[int] = None
    fl_params: Optional[int] = None
    bw_layer_in: Optional[int] = None
    fl_layer_in: Optional[int] = None
    bw_layer_out: Optional[int] = None
    fl_layer_out: Optional[int] = None

    @property
    def quantizes_params(self) -> bool:
        return self.bw_params is not None and self.fl_params is not None

    @property
    def quantizes_input(self) -> bool:
        return self.bw_layer_in is not None and self.fl_layer_in is not None

    @property
    def quantizes_output(self) -> bool:
        return self.bw_layer_out is not None and self.fl_layer_out is not None

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name) is not None}

    @classmethod
    def from_dict(cls, obj: Mapping[str, Any]) -> "QuantizationParam":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(obj) - known)
        if unknown:
            raise EngineError(f"quantization_param: unknown fields {unknown}")
        return cls(**{k: (v if k == "precision" else int(v)) for k, v in obj.items() if v is not None})


@dataclass(frozen=True)
class LayerDescriptor:
    name: str
    type: str
    params: Mapping[str, Any] = field(default_factory=dict)
    quantization: Optional[QuantizationParam] = None

    @property
    def base_type(self) -> str:
        return base_type(self.type)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"name": self.name, "type": self.type, "params": copy.deepcopy(dict(self.params))}
        if self.quantization is not None:
            out["quantization_param"] = self.quantization.to_dict()
        return out

    @classmethod
    def from_dict(cls, obj: Mapping[str, Any]) -> "LayerDescriptor":
        if "name" not in obj or "type" not in obj:
            raise EngineError(f"Malformed layer entry (needs 'name' and 'type'): {dict(obj)}")
        qp = obj.get("quantization_param")
        return cls(
            name=str(obj["name"]),
            type=str(obj["type"]),
            params=copy.deepcopy(dict(obj.get("params") or {})),
            quantization=QuantizationParam.from_dict(qp) if qp else None,
        )


@dataclass(frozen=True)
class NetworkDescription:
    name: str
    layers: Tuple[LayerDescriptor, ...]
    input_shape: Tuple[int, ...] = ()

    def __post_init__(self) -> None:
        names = [layer.name for layer in self.layers]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise EngineError(f"Duplicate layer names in '{self.name}': {duplicates}")

    def __iter__(self) -> Iterator[LayerDescriptor]:
        return iter(self.layers)

    def __len__(self) -> int:
        return len(self.layers)

    def layer(self, name: str) -> LayerDescriptor:
        for layer in self.layers:
            if layer.name == name:
                return layer
        raise KeyError(name)

    def replace_layers(self, layers: List[LayerDescriptor]) -> "NetworkDescription":
        if [l.name for l in layers] != [l.name for l in self.layers]:
            raise ValueError("replace_layers: layer order and names must be preserved")
        return replace(self, layers=tuple(layers))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "input_shape": list(self.input_shape),
            "layers": [layer.to_dict() for layer in self.layers],
        }

    @classmethod
    def from_dict(cls, obj: Mapping[str, Any]) -> "NetworkDescription":
        if not isinstance(obj, Mapping) or not isinstance(obj.get("layers"), list):
            raise EngineError("Network description malformed: expected an object with a 'layers' list")
        return cls(
            name=str(obj.get("name", "net")),
            layers=tuple(LayerDescriptor.from_dict(entry) for entry in obj["layers"]),
            input_shape=tuple(int(d) for d in obj.get("input_shape", ())),
        )

    def to_text(self) -> str:
        return json.dumps(self.to_dict(), indent=2, ensure_ascii=False, sort_keys=False) + "\n"


# ---------------------------------------------------------------------------
# I/O utilities
# ---------------------------------------------------------------------------


def load_description(path: Union[str, Path]) -> NetworkDescription:
    """
    Load a network description JSON from disk.
    """
    p = Path(path)
    if not p.exists():
        raise EngineError(f"Network description not found: {p}")
    try:
        with p.open("r", encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as exc:
        raise EngineError(f"Network description {p} is not valid JSON: {exc}") from exc
    return NetworkDescription.from_dict(data)


def _current_umask() -> int:
    mask = os.umask(0)
    os.umask(mask)
    return mask


def write_description(description: NetworkDescription, path: Union[str, Path]) -> Path:
    """
    Write the description next to `path` and rename it into place, so readers never see a partial file.
    """
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{p.name}.", dir=str(p.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(description.to_text())
        # mkstemp creates 0600; give the result the mode a plain open() would
        os.chmod(tmp, 0o666 & ~_current_umask())
        os.replace(tmp, p)
    except BaseException:
        if os.path.exists(tmp):
            os.remove(tmp)
        raise
    return p


__all__ = [
    "QUANTIZED_TYPES",
    "DYNAMIC_FIXED_POINT",
    "base_type",
    "quantized_type",
    "QuantizationParam",
    "LayerDescriptor",
    "NetworkDescription",
    "load_description",
    "write_description",
]
