"""Shared fixtures: a deterministic in-memory forward runner and small networks."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import pytest
import torch

from dynfix.conf import CalibrationConfig
from dynfix.errors import EngineError
from dynfix.models.description import LayerDescriptor, NetworkDescription, write_description
from dynfix.models.runner import CalibrationSet

Extrema = Tuple[float, float, Optional[float]]

# Ranges of the two-layer reference scenario: (max_in, max_out, max_params)
SCENARIO_EXTREMA: Dict[str, Extrema] = {
    "conv1": (1.2, 0.4, 3.9),
    "relu1": (0.4, 0.4, None),
    "fc1": (0.4, 0.05, 0.9),
}


def quantization_penalty(description: NetworkDescription) -> float:
    """Deterministic accuracy loss: narrower formats cost more."""
    penalty = 0.0
    for layer in description:
        q = layer.quantization
        if q is None:
            continue
        for bw in (q.bw_params, q.bw_layer_in, q.bw_layer_out):
            if bw is not None:
                penalty += 0.08 / bw
    return penalty


def default_scores(description: NetworkDescription, batch: int) -> List[float]:
    accuracy = 0.9 - quantization_penalty(description)
    return [accuracy, 1.0 - accuracy]


@dataclass
class FakeHandle:
    description: NetworkDescription
    observe: bool
    batch: int = 0
    released: bool = False


class FakeRunner:
    def __init__(
        self,
        extrema_batches: Sequence[Dict[str, Extrema]] = (SCENARIO_EXTREMA,),
        score_fn: Callable[[NetworkDescription, int], List[float]] = default_scores,
        fail_on_forward: Optional[Callable[[NetworkDescription], bool]] = None,
    ) -> None:
        self.extrema_batches = list(extrema_batches)
        self.score_fn = score_fn
        self.fail_on_forward = fail_on_forward
        self.loaded: List[Tuple[NetworkDescription, bool]] = []
        self.handles: List[FakeHandle] = []
        self.written: List[Path] = []

    def load(self, description, weights, *, observe=False):
        if weights == "incompatible.pt":
            raise EngineError("Incompatible weights: missing 'conv1.weight'")
        self.loaded.append((description, observe))
        handle = FakeHandle(description=description, observe=observe)
        self.handles.append(handle)
        return handle

    def forward(self, handle):
        if self.fail_on_forward is not None and self.fail_on_forward(handle.description):
            raise EngineError("forward failed")
        scores = self.score_fn(handle.description, handle.batch)
        handle.batch += 1
        return scores, scores[-1]

    def layer_extrema(self, handle):
        return dict(self.extrema_batches[(handle.batch - 1) % len(self.extrema_batches)])

    def output_names(self, handle):
        return ["accuracy", "loss"]

    def loss_weights(self, handle):
        return [0.0, 1.0]

    def release(self, handle):
        handle.released = True

    def write_description(self, description, path):
        written = write_description(description, path)
        self.written.append(written)
        return written


def make_scenario_net() -> NetworkDescription:
    return NetworkDescription(
        name="scenario",
        input_shape=(1, 4, 4),
        layers=(
            LayerDescriptor("conv1", "Convolution", {"in_channels": 1, "out_channels": 2, "kernel_size": 3, "padding": 1}),
            LayerDescriptor("relu1", "ReLU", {}),
            LayerDescriptor("flatten", "Flatten", {}),
            LayerDescriptor("fc1", "InnerProduct", {"in_features": 32, "out_features": 3}),
        ),
    )


@pytest.fixture()
def scenario_net() -> NetworkDescription:
    return make_scenario_net()


@pytest.fixture()
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture()
def calib_config(tmp_path: Path) -> CalibrationConfig:
    return CalibrationConfig(
        model=str(tmp_path / "net.json"),
        weights="weights.pt",
        model_quantized=str(tmp_path / "out" / "net_dfp.json"),
        iterations=3,
        bitwidth_weights=[8],
        bitwidth_activations=[8],
    )


# --- torch fixtures ------------------------------------------------------------


@pytest.fixture()
def torch_weights() -> Dict[str, torch.Tensor]:
    gen = torch.Generator().manual_seed(0)
    return {
        "conv1.weight": torch.randn(2, 1, 3, 3, generator=gen),
        "conv1.bias": torch.randn(2, generator=gen),
        "fc1.weight": torch.randn(3, 32, generator=gen) * 0.2,
        "fc1.bias": torch.randn(3, generator=gen) * 0.1,
    }


@pytest.fixture()
def calib_set() -> CalibrationSet:
    gen = torch.Generator().manual_seed(1)
    inputs = torch.randn(8, 1, 4, 4, generator=gen)
    labels = torch.randint(0, 3, (8,), generator=gen)
    return CalibrationSet(inputs=inputs, labels=labels, batch_size=4)


@pytest.fixture()
def torch_files(tmp_path: Path, scenario_net, torch_weights, calib_set) -> Dict[str, Path]:
    net_path = write_description(scenario_net, tmp_path / "net.json")
    weights_path = tmp_path / "weights.pt"
    torch.save(torch_weights, weights_path)
    data_path = tmp_path / "calib.pt"
    torch.save({"inputs": calib_set.inputs, "labels": calib_set.labels}, data_path)
    return {"model": net_path, "weights": weights_path, "data": data_path}
