# dynfix/conf/calibration.py
from __future__ import annotations

from dataclasses import dataclass, field, asdict
from typing import Any, Dict, Iterable, List, Optional, Union
import json
import os

from dynfix.errors import ConfigurationError


TRIMMING_MODES = ("dynamic_fixed_point",)
MIN_BITWIDTH, MAX_BITWIDTH = 2, 32


def _as_bitwidth_list(value: Union[int, str, Iterable[int], None]) -> List[int]:
    if value is None:
        return []
    if isinstance(value, bool):
        raise ConfigurationError(f"bit-width must be an integer, got {value!r}")
    if isinstance(value, int):
        return [value]
    if isinstance(value, str):
        parts = [p.strip() for p in value.split(",") if p.strip()]
        try:
            return [int(p) for p in parts]
        except ValueError as exc:
            raise ConfigurationError(f"Unparseable bit-width list '{value}'") from exc
    return [int(v) for v in value]


def parse_gpu_ids(gpus: str, available: Optional[int] = None) -> List[int]:
    """
    Parse a device selector into CUDA device ids.

      ""        -> []            (CPU)
      "all"     -> every visible CUDA device
      "0,2"     -> [0, 2]
    """
    spec = (gpus or "").strip()
    if not spec:
        return []
    if spec == "all":
        if available is None:
            import torch

            available = torch.cuda.device_count() if torch.cuda.is_available() else 0
        return list(range(available))
    ids: List[int] = []
    for token in spec.split(","):
        token = token.strip()
        try:
            device_id = int(token)
        except ValueError as exc:
            raise ConfigurationError(f"Unparseable device list '{gpus}'") from exc
        if device_id < 0:
            raise ConfigurationError(f"Negative device id in '{gpus}'")
        ids.append(device_id)
    return ids


@dataclass
class CalibrationConfig:
    """
    Dynamic fixed-point calibration configuration.

    Fields
    ------
    model : network description (.json) of the full-precision net
    weights : trained weights (torch state dict, keys "<layer>.weight" / "<layer>.bias")
    model_quantized : output path of the quantized network description
    data : calibration set (torch.save'd {"inputs": Tensor, "labels": Tensor})
    iterations : number of calibration batches per scoring pass
    batch_size : samples per calibration batch
    trimming_mode : quantization scheme; only "dynamic_fixed_point"
    bitwidth_weights : candidate bit-widths for CONV and FC parameters
    bitwidth_activations : candidate bit-widths for layer inputs/outputs
    gpus : "" for CPU, "all", or a comma separated id list
    score_number : index of the network output used as accuracy
    max_accuracy_drop : accuracy floor = baseline - drop when choosing among candidates (None: no floor)
    activation_il_offset : added to activation integer lengths (e.g. -1 to reclaim one bit)
    """
    model: str = ""
    weights: str = ""
    model_quantized: str = ""
    data: str = ""

    iterations: int = 50
    batch_size: int = 32
    trimming_mode: str = "dynamic_fixed_point"
    bitwidth_weights: List[int] = field(default_factory=lambda: [8])
    bitwidth_activations: List[int] = field(default_factory=lambda: [8])
    gpus: str = ""

    score_number: int = 0
    max_accuracy_drop: Optional[float] = None
    activation_il_offset: int = 0

    def __post_init__(self) -> None:
        self.bitwidth_weights = _as_bitwidth_list(self.bitwidth_weights)
        self.bitwidth_activations = _as_bitwidth_list(self.bitwidth_activations)

    def validate(self) -> "CalibrationConfig":
        """Raise ConfigurationError on anything that would make the run meaningless."""
        if self.trimming_mode not in TRIMMING_MODES:
            raise ConfigurationError(f"Unknown trimming mode: {self.trimming_mode}")
        if not isinstance(self.iterations, int) or self.iterations <= 0:
            raise ConfigurationError(f"iterations must be a positive integer, got {self.iterations!r}")
        if self.batch_size <= 0:
            raise ConfigurationError(f"batch_size must be positive, got {self.batch_size!r}")
        for label, widths in (("bitwidth_weights", self.bitwidth_weights),
                              ("bitwidth_activations", self.bitwidth_activations)):
            if not widths:
                raise ConfigurationError(f"{label}: at least one candidate bit-width is required")
            for bw in widths:
                if not MIN_BITWIDTH <= bw <= MAX_BITWIDTH:
                    raise ConfigurationError(f"{label}: {bw} outside [{MIN_BITWIDTH}, {MAX_BITWIDTH}]")
        if self.score_number < 0:
            raise ConfigurationError(f"score_number must be >= 0, got {self.score_number}")
        if self.max_accuracy_drop is not None and self.max_accuracy_drop < 0:
            raise ConfigurationError(f"max_accuracy_drop must be >= 0, got {self.max_accuracy_drop}")
        parse_gpu_ids(self.gpus, available=0 if self.gpus.strip() == "all" else None)
        return self

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> "CalibrationConfig":
        cfg = cls()
        return cfg.merge(obj)

    @classmethod
    def from_env(cls, prefix: str = "DYNFIX_") -> "CalibrationConfig":
        """
        Override common fields from environment variables.
        Supported:
          DYNFIX_MODEL, DYNFIX_WEIGHTS, DYNFIX_MODEL_QUANTIZED, DYNFIX_DATA
          DYNFIX_ITERATIONS=50
          DYNFIX_BATCH_SIZE=32
          DYNFIX_TRIMMING_MODE=dynamic_fixed_point
          DYNFIX_BITWIDTH_WEIGHTS=8 | 8,6,4
          DYNFIX_BITWIDTH_ACTIVATIONS=8
          DYNFIX_GPUS=all | 0,1
          DYNFIX_SCORE_NUMBER=0
          DYNFIX_MAX_ACCURACY_DROP=0.01
          DYNFIX_ACTIVATION_IL_OFFSET=-1
        """
        cfg = cls()

        def _get(name: str) -> Optional[str]:
            return os.environ.get(prefix + name)

        def _int(name: str, raw: str) -> int:
            try:
                return int(raw)
            except ValueError as exc:
                raise ConfigurationError(f"{prefix}{name}: expected integer, got '{raw}'") from exc

        for name in ("MODEL", "WEIGHTS", "MODEL_QUANTIZED", "DATA", "TRIMMING_MODE", "GPUS"):
            if (v := _get(name)) is not None:
                setattr(cfg, name.lower(), v)
        for name in ("ITERATIONS", "BATCH_SIZE", "SCORE_NUMBER", "ACTIVATION_IL_OFFSET"):
            if (v := _get(name)):
                setattr(cfg, name.lower(), _int(name, v))
        if (v := _get("BITWIDTH_WEIGHTS")):
            cfg.bitwidth_weights = _as_bitwidth_list(v)
        if (v := _get("BITWIDTH_ACTIVATIONS")):
            cfg.bitwidth_activations = _as_bitwidth_list(v)
        if (v := _get("MAX_ACCURACY_DROP")):
            try:
                cfg.max_accuracy_drop = float(v)
            except ValueError as exc:
                raise ConfigurationError(f"{prefix}MAX_ACCURACY_DROP: expected float, got '{v}'") from exc
        return cfg

    def merge(self, other: Optional[Dict[str, Any]] = None) -> "CalibrationConfig":
        """
        Override the current settings from a dict and return self.
        Unknown keys are ignored; None values leave the field untouched.
        """
        if not other:
            return self
        for k, v in other.items():
            if hasattr(self, k) and v is not None:
                setattr(self, k, v)
        self.bitwidth_weights = _as_bitwidth_list(self.bitwidth_weights)
        self.bitwidth_activations = _as_bitwidth_list(self.bitwidth_activations)
        return self

    # 便捷 I/O

    @classmethod
    def load_json(cls, path: str) -> "CalibrationConfig":
        with open(path, "r", encoding="utf-8") as f:
            try:
                obj = json.load(f)
            except json.JSONDecodeError as exc:
                raise ConfigurationError(f"Config file {path} is not valid JSON: {exc}") from exc
        if not isinstance(obj, dict):
            raise ConfigurationError(f"Config file {path} must hold a JSON object")
        return cls.from_dict(obj)

    def save_json(self, path: str) -> None:
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, ensure_ascii=False, indent=2)


__all__ = ["CalibrationConfig", "TRIMMING_MODES", "parse_gpu_ids"]
