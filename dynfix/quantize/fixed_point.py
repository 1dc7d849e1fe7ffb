# dynfix/quantize/fixed_point.py
"""
Core math utilities for dynamic fixed-point calibration.

A dynamic fixed-point number with bit-width `bw` and fractional length `fl`
represents values k * 2^-fl for signed integers k in [-2^(bw-1), 2^(bw-1) - 1].
The integer length `il = bw - fl` is chosen per layer from the largest observed
magnitude so that no saturation occurs (assuming an infinitely long fraction).
"""

from __future__ import annotations

import math
from typing import Callable, Tuple

import torch

IL_EPS = 1e-8

IntegerLengthRule = Callable[[float], int]


def signed_integer_length(max_abs: float, eps: float = IL_EPS) -> int:
    """
    il = ceil(log2(max_abs + eps + 1)).

    `eps` keeps log2 finite at 0; the `+1` reserves room for the sign of a
    two's-complement value. This is a heuristic, not a proven optimum.
    """
    value = float(max_abs)
    if not math.isfinite(value):
        raise ValueError(f"signed_integer_length: max_abs must be finite, got {max_abs!r}")
    if value < 0:
        raise ValueError(f"signed_integer_length: max_abs must be an absolute value, got {max_abs!r}")
    return int(math.ceil(math.log2(value + eps + 1)))


def fractional_length(bitwidth: int, integer_length: int) -> int:
    return int(bitwidth) - int(integer_length)


def bitwidth_from(fractional: int, integer_length: int) -> int:
    return int(fractional) + int(integer_length)


def fixed_point_range(bitwidth: int, fractional: int) -> Tuple[float, float]:
    """Smallest and largest representable value of a (bw, fl) dynamic fixed-point number."""
    step = 2.0 ** -fractional
    return -(2 ** (bitwidth - 1)) * step, (2 ** (bitwidth - 1) - 1) * step


@torch.no_grad()
def trim_to_dynamic_fixed_point(x: torch.Tensor, bitwidth: int, fractional: int) -> torch.Tensor:
    """
    Round-to-nearest and saturate a float tensor onto the (bw, fl) grid.
    The result stays float; only the value set is reduced.
    """
    lo, hi = fixed_point_range(bitwidth, fractional)
    scale = 2.0 ** fractional
    return torch.clamp(torch.round(x * scale) / scale, lo, hi)


__all__ = [
    "IL_EPS",
    "IntegerLengthRule",
    "signed_integer_length",
    "fractional_length",
    "bitwidth_from",
    "fixed_point_range",
    "trim_to_dynamic_fixed_point",
]
