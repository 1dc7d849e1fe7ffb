# dynfix/pipeline/search.py
"""
SearchOrchestrator: drives a full dynamic fixed-point calibration run.

Stages (linear, no way back):
    IDLE -> BASELINE_MEASURED -> CONV_EVALUATED -> FC_EVALUATED
         -> ACTIVATIONS_EVALUATED -> COMBINED_EVALUATED -> DONE

  BASELINE_MEASURED     : reference net scored once; layer statistics fixed for the run
  CONV_EVALUATED        : only CONV parameters quantized, one candidate per bit-width
  FC_EVALUATED          : only FC parameters quantized (CONV stays float)
  ACTIVATIONS_EVALUATED : inputs/outputs of CONV and FC layers quantized, parameters float
  COMBINED_EVALUATED    : the chosen bit-widths applied together; this accuracy is the result
  DONE                  : combined description written, summary logged

Every candidate is built fresh from the immutable base description and dropped
after scoring; only the combined candidate survives into the result.
"""

from __future__ import annotations

import enum
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from dynfix.conf import CalibrationConfig
from dynfix.errors import ConfigurationError
from dynfix.models.description import NetworkDescription, load_description
from dynfix.models.runner import ForwardRunner
from dynfix.overwatch import format_calibration_summary, initialize_overwatch
from dynfix.quantize.builder import Aspect, BitWidths, CandidateConfigBuilder, LayerCategory
from dynfix.quantize.evaluator import AccuracyEvaluator
from dynfix.quantize.fixed_point import IntegerLengthRule, signed_integer_length
from dynfix.quantize.integer_lengths import IntegerLengthCalculator
from dynfix.quantize.statistics import LayerStatistics, StatisticsCollector

# Initialize Overwatch =>> Wraps `logging.Logger`
overwatch = initialize_overwatch(__name__)


class CalibrationStage(enum.IntEnum):
    IDLE = 0
    BASELINE_MEASURED = 1
    CONV_EVALUATED = 2
    FC_EVALUATED = 3
    ACTIVATIONS_EVALUATED = 4
    COMBINED_EVALUATED = 5
    DONE = 6


class QuantizationTarget(enum.Enum):
    CONV_WEIGHTS = "conv_weights"
    FC_WEIGHTS = "fc_weights"
    ACTIVATIONS = "activations"


@dataclass(frozen=True)
class Trial:
    bitwidth: int
    accuracy: float


@dataclass(frozen=True)
class CategoryResult:
    target: QuantizationTarget
    trials: Tuple[Trial, ...]
    bitwidth: int
    accuracy: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bitwidth": self.bitwidth,
            "accuracy": self.accuracy,
            "trials": [{"bitwidth": t.bitwidth, "accuracy": t.accuracy} for t in self.trials],
        }


@dataclass(frozen=True)
class CalibrationResult:
    baseline_accuracy: float
    conv_weights: CategoryResult
    fc_weights: CategoryResult
    activations: CategoryResult
    combined_accuracy: float
    description: NetworkDescription
    statistics: Tuple[LayerStatistics, ...] = field(default_factory=tuple)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "baseline_accuracy": self.baseline_accuracy,
            "conv_weights": self.conv_weights.to_dict(),
            "fc_weights": self.fc_weights.to_dict(),
            "activations": self.activations.to_dict(),
            "combined_accuracy": self.combined_accuracy,
            "statistics": [
                {
                    "layer": s.layer_name,
                    "max_input": s.max_input,
                    "max_output": s.max_output,
                    "max_param": s.max_param,
                }
                for s in self.statistics
            ],
        }


def select_bitwidth(
    target: QuantizationTarget,
    trials: Sequence[Trial],
    accuracy_floor: Optional[float] = None,
) -> CategoryResult:
    """
    Best accuracy among trials at or above `accuracy_floor`; ties go to the narrower bit-width.
    When no trial reaches the floor the most accurate one is kept and a warning is logged.
    """
    if not trials:
        raise ConfigurationError(f"{target.value}: no candidate bit-widths were evaluated")
    eligible = [t for t in trials if accuracy_floor is None or t.accuracy >= accuracy_floor]
    if not eligible:
        overwatch.warning(
            f"[Search] {target.value}: no candidate reaches accuracy floor {accuracy_floor:.6f}; "
            "keeping the most accurate one"
        )
        eligible = list(trials)
    best = max(eligible, key=lambda t: (t.accuracy, -t.bitwidth))
    return CategoryResult(target=target, trials=tuple(trials), bitwidth=best.bitwidth, accuracy=best.accuracy)


def check_write_permissions(path: str) -> None:
    """
    Check that `path` can be created without leaving anything behind.

    An existing file is opened for append and left untouched. When the parent directory
    does not exist yet, the closest existing ancestor must be a writable directory;
    missing directories are only created by the final write.
    """
    if not path:
        raise ConfigurationError("No output path given for the quantized network description")
    p = Path(path)
    if not p.parent.exists():
        ancestor = p.parent
        while not ancestor.exists():
            ancestor = ancestor.parent
        if not ancestor.is_dir() or not os.access(ancestor, os.W_OK | os.X_OK):
            raise ConfigurationError(f"Missing write permissions for {p}: cannot create directories under {ancestor}")
        return
    existed = p.exists()
    try:
        with open(p, "a", encoding="utf-8"):
            pass
    except OSError as exc:
        raise ConfigurationError(f"Missing write permissions for {p}: {exc}") from exc
    if not existed:
        os.remove(p)


class SearchOrchestrator:
    def __init__(
        self,
        config: CalibrationConfig,
        runner: ForwardRunner,
        *,
        description: Optional[NetworkDescription] = None,
        weights: Any = None,
        integer_length_rule: IntegerLengthRule = signed_integer_length,
    ) -> None:
        self.config = config
        self.runner = runner
        self._description = description
        self.weights = weights if weights is not None else config.weights
        self.calculator = IntegerLengthCalculator(integer_length_rule, config.activation_il_offset)
        self.stage = CalibrationStage.IDLE

    # ------------------------------------------------------------------
    # Stage bookkeeping
    # ------------------------------------------------------------------

    def _advance(self, stage: CalibrationStage) -> None:
        if stage != self.stage + 1:
            raise RuntimeError(f"Illegal stage transition {self.stage.name} -> {stage.name}")
        overwatch.info(f"[Search] stage -> {stage.name}")
        self.stage = stage

    def _accuracy_floor(self, baseline: float) -> Optional[float]:
        drop = self.config.max_accuracy_drop
        return None if drop is None else baseline - drop

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(self) -> CalibrationResult:
        if self.stage != CalibrationStage.IDLE:
            raise RuntimeError(f"SearchOrchestrator already ran (stage={self.stage.name})")
        cfg = self.config
        cfg.validate()
        check_write_permissions(cfg.model_quantized)

        base = self._description if self._description is not None else load_description(cfg.model)
        collector = StatisticsCollector(self.runner, score_index=cfg.score_number)
        evaluator = AccuracyEvaluator(self.runner, score_index=cfg.score_number)

        # Reference float network on the calibration set: baseline accuracy + layer ranges.
        with overwatch.scoped("Measuring baseline"):
            baseline, stats = collector.collect(base, self.weights, cfg.iterations)
        table = self.calculator.table(stats)
        table.log()
        builder = CandidateConfigBuilder(table)
        floor = self._accuracy_floor(baseline)
        self._advance(CalibrationStage.BASELINE_MEASURED)

        def _score(target: QuantizationTarget, category: LayerCategory, aspect: Aspect,
                   widths: Sequence[int], make: Any) -> CategoryResult:
            trials: List[Trial] = []
            for bw in widths:
                with overwatch.scoped(f"Scoring {bw}-bit {target.value}"):
                    candidate = builder.build(base, category, aspect, make(bw))
                    trials.append(Trial(bw, evaluator.evaluate(candidate, self.weights, cfg.iterations)))
            return select_bitwidth(target, trials, floor)

        conv = _score(QuantizationTarget.CONV_WEIGHTS, LayerCategory.CONVOLUTION, Aspect.PARAMETERS,
                      cfg.bitwidth_weights, lambda bw: BitWidths(conv_params=bw))
        self._advance(CalibrationStage.CONV_EVALUATED)

        fc = _score(QuantizationTarget.FC_WEIGHTS, LayerCategory.INNER_PRODUCT, Aspect.PARAMETERS,
                    cfg.bitwidth_weights, lambda bw: BitWidths(fc_params=bw))
        self._advance(CalibrationStage.FC_EVALUATED)

        acts = _score(QuantizationTarget.ACTIVATIONS, LayerCategory.BOTH, Aspect.ACTIVATIONS,
                      cfg.bitwidth_activations, lambda bw: BitWidths(layer_in=bw, layer_out=bw))
        self._advance(CalibrationStage.ACTIVATIONS_EVALUATED)

        combined = self.build_combined(builder, base, conv.bitwidth, fc.bitwidth, acts.bitwidth)
        with overwatch.scoped("Scoring combined dynamic fixed-point net"):
            combined_accuracy = evaluator.evaluate(combined, self.weights, cfg.iterations)
        self._advance(CalibrationStage.COMBINED_EVALUATED)

        result = CalibrationResult(
            baseline_accuracy=baseline,
            conv_weights=conv,
            fc_weights=fc,
            activations=acts,
            combined_accuracy=combined_accuracy,
            description=combined,
            statistics=tuple(stats),
        )
        written = self.runner.write_description(combined, cfg.model_quantized)
        overwatch.info(f"[Save] quantized network description written to: {written}")
        for line in format_calibration_summary(result).splitlines():
            overwatch.info(line)
        self._advance(CalibrationStage.DONE)
        return result

    @staticmethod
    def build_combined(
        builder: CandidateConfigBuilder,
        base: NetworkDescription,
        bw_conv: int,
        bw_fc: int,
        bw_act: int,
    ) -> NetworkDescription:
        """CONV and FC parameters plus all CONV/FC activations in dynamic fixed point."""
        return builder.build(
            base,
            LayerCategory.BOTH,
            Aspect.BOTH,
            BitWidths(conv_params=bw_conv, fc_params=bw_fc, layer_in=bw_act, layer_out=bw_act),
        )


__all__ = [
    "CalibrationStage",
    "QuantizationTarget",
    "Trial",
    "CategoryResult",
    "CalibrationResult",
    "select_bitwidth",
    "check_write_permissions",
    "SearchOrchestrator",
]
