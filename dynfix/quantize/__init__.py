# dynfix/quantize/__init__.py
"""
Dynamic fixed-point calibration toolkit.

Public API:
- StatisticsCollector:     baseline accuracy + per-layer max |in| / |out| / |params|
- IntegerLengthCalculator: max |x| -> integer bits (pluggable rule)
- CandidateConfigBuilder:  description + category/aspect/bit-widths -> candidate description
- AccuracyEvaluator:       candidate description -> mean designated score

Typical usage (collect -> lengths -> build -> score):
    from dynfix.quantize import (
        StatisticsCollector, IntegerLengthCalculator, CandidateConfigBuilder,
        AccuracyEvaluator, LayerCategory, Aspect, BitWidths,
    )

    baseline, stats = StatisticsCollector(runner).collect(net, weights, iterations=50)
    table = IntegerLengthCalculator().table(stats)
    candidate = CandidateConfigBuilder(table).build(
        net, LayerCategory.CONVOLUTION, Aspect.PARAMETERS, BitWidths(conv_params=8)
    )
    accuracy = AccuracyEvaluator(runner).evaluate(candidate, weights, iterations=50)

Submodules are imported on first attribute access so that `dynfix.models` can use
`dynfix.quantize.fixed_point` without pulling in the whole toolkit.
"""

from importlib import import_module
from typing import Any

_EXPORTS = {
    "StatisticsCollector": "statistics",
    "StatisticsReport": "statistics",
    "LayerStatistics": "statistics",
    "IntegerLengthCalculator": "integer_lengths",
    "IntegerLengthTable": "integer_lengths",
    "IntegerLengths": "integer_lengths",
    "CandidateConfigBuilder": "builder",
    "LayerCategory": "builder",
    "Aspect": "builder",
    "BitWidths": "builder",
    "AccuracyEvaluator": "evaluator",
    "run_forward_batches": "evaluator",
    "signed_integer_length": "fixed_point",
    "fractional_length": "fixed_point",
}

__all__ = tuple(_EXPORTS)


def __getattr__(name: str) -> Any:
    if name in _EXPORTS:
        value = getattr(import_module(f"{__name__}.{_EXPORTS[name]}"), name)
        globals()[name] = value
        return value
    raise AttributeError(f"module '{__name__}' has no attribute '{name}'")


def __dir__() -> Any:
    return sorted(list(globals().keys()) + list(__all__))
