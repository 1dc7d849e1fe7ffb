# dynfix/quantize/statistics.py
"""
StatisticsCollector: baseline accuracy and per-layer ranges of the reference network.

For every layer that reports extrema it records:
    - max_input  : largest |x| seen at the layer input
    - max_output : largest |y| seen at the layer output
    - max_param  : largest |w| over the layer's learnable tensors (None if it has none)

Maxima only grow across batches. The running state lives in a `_RangeAccumulator`
created per `collect()` call and is returned frozen.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, NamedTuple, Optional, Tuple

from dynfix.errors import EngineError
from dynfix.overwatch import initialize_overwatch
from dynfix.quantize.evaluator import BatchScores, run_forward_batches, check_iterations

if TYPE_CHECKING:  # pragma: no cover
    from dynfix.models.description import NetworkDescription
    from dynfix.models.runner import ForwardRunner

# Initialize Overwatch =>> Wraps `logging.Logger`
overwatch = initialize_overwatch(__name__)


@dataclass(frozen=True)
class LayerStatistics:
    layer_name: str
    max_input: float
    max_output: float
    max_param: Optional[float] = None

    def __post_init__(self) -> None:
        for label in ("max_input", "max_output", "max_param"):
            value = getattr(self, label)
            if value is not None and value < 0:
                raise ValueError(f"{self.layer_name}: {label} must be an absolute value, got {value}")


class StatisticsReport(NamedTuple):
    baseline_accuracy: float
    layers: List[LayerStatistics]


class _RangeAccumulator:
    def __init__(self) -> None:
        # layer -> [max_in, max_out, max_params]; insertion order follows first sighting
        self._ranges: Dict[str, List[Optional[float]]] = {}

    def update(self, extrema: Mapping[str, Tuple[float, float, Optional[float]]]) -> None:
        for name, (max_in, max_out, max_params) in extrema.items():
            current = self._ranges.get(name)
            if current is None:
                self._ranges[name] = [abs(float(max_in)), abs(float(max_out)),
                                      None if max_params is None else abs(float(max_params))]
                continue
            current[0] = max(current[0], abs(float(max_in)))
            current[1] = max(current[1], abs(float(max_out)))
            if max_params is not None:
                prev = current[2]
                current[2] = abs(float(max_params)) if prev is None else max(prev, abs(float(max_params)))

    def freeze(self) -> List[LayerStatistics]:
        return [
            LayerStatistics(layer_name=name, max_input=r[0], max_output=r[1], max_param=r[2])
            for name, r in self._ranges.items()
        ]


class StatisticsCollector:
    def __init__(self, runner: "ForwardRunner", score_index: int = 0) -> None:
        self.runner = runner
        self.score_index = score_index

    def collect(self, description: "NetworkDescription", weights: Any, iterations: int) -> StatisticsReport:
        """
        Run the full-precision network over `iterations` batches; return baseline accuracy
        and the per-layer maxima observed over the whole run.
        """
        check_iterations(iterations)
        ranges = _RangeAccumulator()
        handle = self.runner.load(description, weights, observe=True)
        try:
            def _record(_batch: int) -> None:
                ranges.update(self.runner.layer_extrema(handle))

            scores: BatchScores = run_forward_batches(self.runner, handle, iterations, on_batch=_record)
        finally:
            self.runner.release(handle)

        layers = ranges.freeze()
        if not layers:
            raise EngineError(f"Network '{description.name}' reported no layer ranges")
        for stats in layers:
            overwatch.info(
                f"[Stats] {stats.layer_name}: max_in={stats.max_input:.6g} "
                f"max_out={stats.max_output:.6g} max_param={stats.max_param}",
                ctx_level=2,
            )
        return StatisticsReport(baseline_accuracy=scores.score(self.score_index), layers=layers)


__all__ = ["LayerStatistics", "StatisticsReport", "StatisticsCollector"]
