# dynfix/quantize/integer_lengths.py
"""
Integer lengths per layer, derived once from the collected statistics.

The rule (max |x| -> bits) is pluggable; the default is `signed_integer_length`.
`activation_il_offset` is added to input/output lengths only; it exists for the
"one bit less for activations" variant and is 0 unless configured.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, Optional

from dynfix.errors import LayerNotFoundError
from dynfix.overwatch import initialize_overwatch
from dynfix.quantize.fixed_point import IntegerLengthRule, signed_integer_length
from dynfix.quantize.statistics import LayerStatistics

# Initialize Overwatch =>> Wraps `logging.Logger`
overwatch = initialize_overwatch(__name__)


@dataclass(frozen=True)
class IntegerLengths:
    il_in: int
    il_out: int
    il_params: Optional[int] = None


class IntegerLengthCalculator:
    def __init__(self, rule: IntegerLengthRule = signed_integer_length, activation_il_offset: int = 0) -> None:
        self.rule = rule
        self.activation_il_offset = int(activation_il_offset)

    def compute(self, stats: LayerStatistics) -> IntegerLengths:
        return IntegerLengths(
            il_in=self.rule(stats.max_input) + self.activation_il_offset,
            il_out=self.rule(stats.max_output) + self.activation_il_offset,
            il_params=None if stats.max_param is None else self.rule(stats.max_param),
        )

    def table(self, layers: Iterable[LayerStatistics]) -> "IntegerLengthTable":
        return IntegerLengthTable({s.layer_name: self.compute(s) for s in layers})


class IntegerLengthTable:
    """Lookup of integer lengths by layer name. Unknown names are an error, never a default."""

    def __init__(self, lengths: Dict[str, IntegerLengths]) -> None:
        self._lengths = dict(lengths)

    def __contains__(self, layer_name: str) -> bool:
        return layer_name in self._lengths

    def __len__(self) -> int:
        return len(self._lengths)

    def _get(self, layer_name: str, quantity: str) -> IntegerLengths:
        try:
            return self._lengths[layer_name]
        except KeyError:
            raise LayerNotFoundError(layer_name, quantity) from None

    def params(self, layer_name: str) -> int:
        il = self._get(layer_name, "parameters").il_params
        if il is None:
            raise LayerNotFoundError(layer_name, "no parameter statistics")
        return il

    def input(self, layer_name: str) -> int:
        return self._get(layer_name, "input").il_in

    def output(self, layer_name: str) -> int:
        return self._get(layer_name, "output").il_out

    def log(self) -> None:
        for name, il in self._lengths.items():
            overwatch.info(
                f"Layer {name}, integer length input={il.il_in}, integer length output={il.il_out}, "
                f"integer length parameters={il.il_params if il.il_params is not None else 'n/a'}",
                ctx_level=1,
            )


__all__ = ["IntegerLengths", "IntegerLengthCalculator", "IntegerLengthTable"]
