# dynfix/quantize/evaluator.py
"""
Scoring candidate networks.

`run_forward_batches` is the one loop every scoring pass goes through: it runs
`iterations` blocking forward passes, sums every output position across
batches (the first batch initialises, later batches add in place) and divides
by `iterations`. `AccuracyEvaluator` wraps it with load/release of a candidate.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, List, Optional, Sequence

from dynfix.errors import ConfigurationError, EngineError
from dynfix.overwatch import initialize_overwatch

if TYPE_CHECKING:  # pragma: no cover
    from dynfix.models.description import NetworkDescription
    from dynfix.models.runner import ForwardRunner

# Initialize Overwatch =>> Wraps `logging.Logger`
overwatch = initialize_overwatch(__name__)


@dataclass(frozen=True)
class BatchScores:
    mean_scores: List[float]
    mean_loss: float
    iterations: int

    def score(self, index: int) -> float:
        if not 0 <= index < len(self.mean_scores):
            raise ConfigurationError(
                f"score index {index} out of range; network produces {len(self.mean_scores)} outputs"
            )
        return self.mean_scores[index]


class ScoreAccumulator:
    """Running per-position sums over batches; owned by a single scoring call."""

    def __init__(self) -> None:
        self._sums: List[float] = []
        self._loss = 0.0
        self._batches = 0

    def add(self, scores: Sequence[float], loss: float) -> None:
        if self._batches == 0:
            self._sums = [float(s) for s in scores]
        else:
            if len(scores) != len(self._sums):
                raise EngineError(
                    f"Output count changed between batches: {len(self._sums)} -> {len(scores)}"
                )
            for idx, s in enumerate(scores):
                self._sums[idx] += float(s)
        self._loss += float(loss)
        self._batches += 1

    def mean(self, iterations: int) -> BatchScores:
        if iterations <= 0:
            raise ConfigurationError(f"iterations must be positive, got {iterations}")
        return BatchScores(
            mean_scores=[s / iterations for s in self._sums],
            mean_loss=self._loss / iterations,
            iterations=iterations,
        )


def check_iterations(iterations: int) -> None:
    if isinstance(iterations, bool) or not isinstance(iterations, int) or iterations <= 0:
        raise ConfigurationError(f"iterations must be a positive integer, got {iterations!r}")


def run_forward_batches(
    runner: "ForwardRunner",
    handle: Any,
    iterations: int,
    *,
    on_batch: Optional[Callable[[int], None]] = None,
) -> BatchScores:
    """
    Run `iterations` forward passes and return mean score per output position.
    `on_batch(i)` is called after batch `i`, while the runner still holds that batch's state.
    """
    check_iterations(iterations)
    overwatch.info(f"Running for {iterations} iterations.", ctx_level=1)
    names = runner.output_names(handle)
    acc = ScoreAccumulator()
    for i in range(iterations):
        scores, loss = runner.forward(handle)
        if on_batch is not None:
            on_batch(i)
        acc.add(scores, loss)
        for idx, score in enumerate(scores):
            label = names[idx] if idx < len(names) else f"output[{idx}]"
            overwatch.info(f"Batch {i}, {label} = {score}", ctx_level=2)

    result = acc.mean(iterations)
    overwatch.info(f"Loss: {result.mean_loss:.6f}", ctx_level=1)
    weights = runner.loss_weights(handle)
    for idx, mean_score in enumerate(result.mean_scores):
        label = names[idx] if idx < len(names) else f"output[{idx}]"
        weight = weights[idx] if idx < len(weights) else 0.0
        suffix = f" (* {weight} = {weight * mean_score:.6f} loss)" if weight else ""
        overwatch.info(f"{label} = {mean_score:.6f}{suffix}", ctx_level=1)
    return result


class AccuracyEvaluator:
    """
    Scores one network description against the trained weights.

    `score_index` selects which output is reported as accuracy; keep it fixed for a
    whole calibration run so candidates are comparable.
    """

    def __init__(self, runner: "ForwardRunner", score_index: int = 0) -> None:
        if score_index < 0:
            raise ConfigurationError(f"score_index must be >= 0, got {score_index}")
        self.runner = runner
        self.score_index = score_index

    def evaluate(self, description: "NetworkDescription", weights: Any, iterations: int) -> float:
        check_iterations(iterations)
        handle = self.runner.load(description, weights, observe=False)
        try:
            scores = run_forward_batches(self.runner, handle, iterations)
        finally:
            self.runner.release(handle)
        accuracy = scores.score(self.score_index)
        overwatch.info(f"[Eval] {description.name}: score[{self.score_index}] = {accuracy:.6f}")
        return accuracy


__all__ = ["BatchScores", "ScoreAccumulator", "check_iterations", "run_forward_batches", "AccuracyEvaluator"]
