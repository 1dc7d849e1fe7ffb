# dynfix/models/runner.py
"""
Forward runners: the inference side of calibration.

The calibration core only talks to the `ForwardRunner` protocol:

    handle = runner.load(description, weights, observe=True)
    scores, loss = runner.forward(handle)          # one blocking batch
    extrema = runner.layer_extrema(handle)         # {layer: (max_in, max_out, max_params|None)}
    runner.release(handle)
    runner.write_description(description, path)

`TorchForwardRunner` is the bundled implementation. It builds a sequential
`nn.Module` from the description, copies a state dict keyed
"<layer>.weight"/"<layer>.bias" into it, and scores fixed calibration batches
(top-1 accuracy and cross entropy). Batches restart from the beginning on every
load so all candidates see identical data.
"""

from __future__ import annotations

import pickle
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple, Union

import torch
import torch.nn.functional as F
from torch import nn
from torch.utils.hooks import RemovableHandle

from dynfix.errors import ConfigurationError, EngineError
from dynfix.models.description import NetworkDescription, write_description
from dynfix.models.layers import build_layer
from dynfix.overwatch import initialize_overwatch

# Initialize Overwatch =>> Wraps `logging.Logger`
overwatch = initialize_overwatch(__name__)

Extrema = Tuple[float, float, Optional[float]]
WeightsLike = Union[str, Path, Mapping[str, torch.Tensor]]

# What torch.load raises on truncated or foreign files
_UNREADABLE = (pickle.UnpicklingError, EOFError, RuntimeError, ValueError, OSError)


class ForwardRunner(Protocol):
    def load(self, description: NetworkDescription, weights: Any, *, observe: bool = False) -> Any: ...

    def forward(self, handle: Any) -> Tuple[List[float], float]: ...

    def layer_extrema(self, handle: Any) -> Dict[str, Extrema]: ...

    def output_names(self, handle: Any) -> List[str]: ...

    def loss_weights(self, handle: Any) -> List[float]: ...

    def release(self, handle: Any) -> None: ...

    def write_description(self, description: NetworkDescription, path: Union[str, Path]) -> Path: ...


# ------------------------------------------------------------------------------
# Device selection
# ------------------------------------------------------------------------------


def select_device(gpu_ids: Sequence[int]) -> torch.device:
    """Use the first listed GPU, or the CPU when the list is empty."""
    if gpu_ids:
        if not torch.cuda.is_available():
            raise ConfigurationError(f"GPU ids {list(gpu_ids)} requested but CUDA is not available")
        if gpu_ids[0] >= torch.cuda.device_count():
            raise ConfigurationError(f"GPU id {gpu_ids[0]} out of range (found {torch.cuda.device_count()})")
        overwatch.info(f"Use GPU with device ID {gpu_ids[0]}")
        torch.cuda.set_device(gpu_ids[0])
        return torch.device("cuda", gpu_ids[0])
    overwatch.info("Use CPU.")
    return torch.device("cpu")


# ------------------------------------------------------------------------------
# Calibration data
# ------------------------------------------------------------------------------


@dataclass(frozen=True)
class CalibrationSet:
    inputs: torch.Tensor
    labels: torch.Tensor
    batch_size: int = 32

    def __post_init__(self) -> None:
        if self.inputs.shape[0] == 0:
            raise ConfigurationError("Calibration set is empty")
        if self.inputs.shape[0] != self.labels.shape[0]:
            raise ConfigurationError(
                f"Calibration set mismatch: {self.inputs.shape[0]} inputs vs {self.labels.shape[0]} labels"
            )
        if self.batch_size <= 0:
            raise ConfigurationError(f"batch_size must be positive, got {self.batch_size}")

    def batch(self, index: int) -> Tuple[torch.Tensor, torch.Tensor]:
        """Batch `index`, wrapping around the end of the set."""
        n = self.inputs.shape[0]
        rows = [(index * self.batch_size + k) % n for k in range(self.batch_size)]
        idx = torch.tensor(rows, dtype=torch.long)
        return self.inputs[idx], self.labels[idx]

    @classmethod
    def load(cls, path: Union[str, Path], batch_size: int = 32) -> "CalibrationSet":
        p = Path(path)
        if not p.exists():
            raise ConfigurationError(f"Calibration data not found: {p}")
        try:
            payload = torch.load(p, map_location="cpu")
        except _UNREADABLE as exc:
            raise ConfigurationError(f"Calibration data {p} could not be read: {exc}") from exc
        if not isinstance(payload, Mapping) or "inputs" not in payload or "labels" not in payload:
            raise ConfigurationError(f"{p}: expected a mapping with 'inputs' and 'labels' tensors")
        return cls(inputs=payload["inputs"].float(), labels=payload["labels"].long(), batch_size=batch_size)


# ------------------------------------------------------------------------------
# Network built from a description
# ------------------------------------------------------------------------------


class DescribedNet(nn.Module):
    def __init__(self, description: NetworkDescription) -> None:
        super().__init__()
        self.layer_names: List[str] = [layer.name for layer in description]
        self.layer_types: List[str] = [layer.type for layer in description]
        self.body = nn.ModuleList([build_layer(layer) for layer in description])

    def named_layers(self) -> List[Tuple[str, nn.Module]]:
        return list(zip(self.layer_names, self.body))

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        for layer in self.body:
            x = layer(x)
        return x


def _load_state(weights: WeightsLike) -> Mapping[str, torch.Tensor]:
    if isinstance(weights, Mapping):
        return weights
    p = Path(weights)
    if not p.exists():
        raise EngineError(f"Trained weights not found: {p}")
    try:
        state = torch.load(p, map_location="cpu")
    except _UNREADABLE as exc:
        raise EngineError(f"Trained weights {p} could not be read: {exc}") from exc
    if isinstance(state, Mapping) and "state_dict" in state:
        state = state["state_dict"]
    if not isinstance(state, Mapping):
        raise EngineError(f"{p}: expected a state dict, got {type(state).__name__}")
    return state


def copy_trained_layers(net: DescribedNet, state: Mapping[str, torch.Tensor]) -> None:
    """Copy "<layer>.<param>" tensors into the net; every learnable tensor must be present with matching shape."""
    with torch.no_grad():
        for name, module in net.named_layers():
            for pname, param in module.named_parameters(recurse=False):
                key = f"{name}.{pname}"
                if key not in state:
                    raise EngineError(f"Incompatible weights: missing '{key}'")
                src = torch.as_tensor(state[key])
                if tuple(src.shape) != tuple(param.shape):
                    raise EngineError(
                        f"Incompatible weights: '{key}' has shape {tuple(src.shape)}, layer expects {tuple(param.shape)}"
                    )
                param.copy_(src.to(device=param.device, dtype=param.dtype))


def _max_abs(t: Any) -> float:
    if isinstance(t, (tuple, list)):
        t = t[0] if t else None
    if not torch.is_tensor(t) or t.numel() == 0:
        return 0.0
    return float(t.detach().abs().max().item())


@dataclass
class TorchHandle:
    net: DescribedNet
    device: torch.device
    observe: bool
    batch_index: int = 0
    extrema: Dict[str, Extrema] = field(default_factory=dict)
    hooks: List[RemovableHandle] = field(default_factory=list)


class TorchForwardRunner:
    OUTPUT_NAMES = ["accuracy", "loss"]
    LOSS_WEIGHTS = [0.0, 1.0]

    def __init__(self, data: CalibrationSet, device: Optional[torch.device] = None) -> None:
        self.data = data
        self.device = device or torch.device("cpu")

    # --- lifecycle ------------------------------------------------------------

    def load(self, description: NetworkDescription, weights: WeightsLike, *, observe: bool = False) -> TorchHandle:
        net = DescribedNet(description)
        copy_trained_layers(net, _load_state(weights))
        net.to(self.device).eval()
        handle = TorchHandle(net=net, device=self.device, observe=observe)
        if observe:
            self._attach_observers(handle)
        return handle

    def release(self, handle: TorchHandle) -> None:
        for h in handle.hooks:
            h.remove()
        handle.hooks.clear()
        handle.extrema.clear()
        handle.net = None  # type: ignore[assignment]
        if self.device.type == "cuda":
            torch.cuda.empty_cache()

    # --- inference ------------------------------------------------------------

    @torch.no_grad()
    def forward(self, handle: TorchHandle) -> Tuple[List[float], float]:
        inputs, labels = self.data.batch(handle.batch_index)
        handle.batch_index += 1
        inputs, labels = inputs.to(handle.device), labels.to(handle.device)
        handle.extrema.clear()
        try:
            logits = handle.net(inputs)
        except RuntimeError as exc:
            raise EngineError(f"Forward pass failed: {exc}") from exc
        if logits.dim() != 2 or logits.shape[0] != labels.shape[0]:
            raise EngineError(f"Network output shape {tuple(logits.shape)} is not [batch, classes]")
        loss = float(F.cross_entropy(logits, labels).item())
        accuracy = float((logits.argmax(dim=1) == labels).float().mean().item())
        return [accuracy, loss], loss

    def layer_extrema(self, handle: TorchHandle) -> Dict[str, Extrema]:
        if not handle.observe:
            raise EngineError("layer_extrema requested from a handle loaded without observe=True")
        return dict(handle.extrema)

    def output_names(self, handle: TorchHandle) -> List[str]:
        return list(self.OUTPUT_NAMES)

    def loss_weights(self, handle: TorchHandle) -> List[float]:
        return list(self.LOSS_WEIGHTS)

    def write_description(self, description: NetworkDescription, path: Union[str, Path]) -> Path:
        return write_description(description, path)

    # --- observation ----------------------------------------------------------

    def _attach_observers(self, handle: TorchHandle) -> None:
        for name, module in handle.net.named_layers():
            params = list(module.parameters(recurse=False))

            def _hook(_module: nn.Module, inputs, output, *, _name: str = name, _params=params) -> None:
                max_params = max((_max_abs(p) for p in _params), default=None)
                handle.extrema[_name] = (_max_abs(inputs), _max_abs(output), max_params)

            handle.hooks.append(module.register_forward_hook(_hook))
        overwatch.debug(f"[runner] attached {len(handle.hooks)} range observers")


__all__ = [
    "ForwardRunner",
    "Extrema",
    "select_device",
    "CalibrationSet",
    "DescribedNet",
    "copy_trained_layers",
    "TorchHandle",
    "TorchForwardRunner",
]
