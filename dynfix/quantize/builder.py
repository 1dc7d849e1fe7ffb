# dynfix/quantize/builder.py
"""
CandidateConfigBuilder: turns the full-precision description into one dynamic fixed-point candidate.

For every layer whose declared type is in the requested category:
    Parameters  -> type := quantized variant, bw_params, fl_params = bw - il_params
    Activations -> type := quantized variant, bw/fl for layer input and output (same bw both ways)
Other layers pass through untouched. The base description is never modified.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, replace
from typing import List, Optional, Tuple

from dynfix.models.description import (
    LayerDescriptor,
    NetworkDescription,
    QuantizationParam,
    quantized_type,
)
from dynfix.quantize.fixed_point import fractional_length
from dynfix.quantize.integer_lengths import IntegerLengthTable


class LayerCategory(enum.Enum):
    CONVOLUTION = ("Convolution",)
    INNER_PRODUCT = ("InnerProduct",)
    BOTH = ("Convolution", "InnerProduct")

    def matches(self, layer: LayerDescriptor) -> bool:
        return layer.base_type in self.value


class Aspect(enum.Flag):
    PARAMETERS = 1
    ACTIVATIONS = 2
    BOTH = PARAMETERS | ACTIVATIONS


@dataclass(frozen=True)
class BitWidths:
    """Bit-width per quantity; None leaves that quantity in full precision."""

    conv_params: Optional[int] = None
    fc_params: Optional[int] = None
    layer_in: Optional[int] = None
    layer_out: Optional[int] = None

    def params_for(self, layer: LayerDescriptor) -> Optional[int]:
        return self.conv_params if layer.base_type == "Convolution" else self.fc_params


class CandidateConfigBuilder:
    def __init__(self, integer_lengths: IntegerLengthTable) -> None:
        self.integer_lengths = integer_lengths

    def build(
        self,
        base: NetworkDescription,
        layer_category: LayerCategory,
        aspect: Aspect,
        bitwidths: BitWidths,
    ) -> NetworkDescription:
        layers: List[LayerDescriptor] = [
            self._edit_layer(layer, aspect, bitwidths) if layer_category.matches(layer) else layer
            for layer in base
        ]
        return base.replace_layers(layers)

    def _edit_layer(self, layer: LayerDescriptor, aspect: Aspect, bitwidths: BitWidths) -> LayerDescriptor:
        qp = layer.quantization or QuantizationParam()
        touched = False

        bw_params = bitwidths.params_for(layer)
        if Aspect.PARAMETERS in aspect and bw_params is not None:
            qp = replace(
                qp,
                bw_params=bw_params,
                fl_params=fractional_length(bw_params, self.integer_lengths.params(layer.name)),
            )
            touched = True

        if Aspect.ACTIVATIONS in aspect:
            if bitwidths.layer_in is not None:
                qp = replace(
                    qp,
                    bw_layer_in=bitwidths.layer_in,
                    fl_layer_in=fractional_length(bitwidths.layer_in, self.integer_lengths.input(layer.name)),
                )
                touched = True
            if bitwidths.layer_out is not None:
                qp = replace(
                    qp,
                    bw_layer_out=bitwidths.layer_out,
                    fl_layer_out=fractional_length(bitwidths.layer_out, self.integer_lengths.output(layer.name)),
                )
                touched = True

        if not touched:
            return layer
        return replace(layer, type=quantized_type(layer.type), quantization=qp)


def quantized_layer_names(description: NetworkDescription) -> Tuple[str, ...]:
    return tuple(layer.name for layer in description if layer.quantization is not None)


__all__ = ["LayerCategory", "Aspect", "BitWidths", "CandidateConfigBuilder", "quantized_layer_names"]
