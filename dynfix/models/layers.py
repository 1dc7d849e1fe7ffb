# dynfix/models/layers.py
"""
Layer registry mapping description layer types to torch modules.

Public API:
    - register_layer(layer_type, creator)
    - build_layer(descriptor) -> nn.Module
    - is_supported(layer_type) -> bool

Quantized variants (`QuantConvolution`, `QuantInnerProduct`) reuse the float
module and trim weights, inputs and outputs onto the dynamic fixed-point grid
given by the layer's QuantizationParam. This is a simulation used for scoring
candidates, not an integer kernel.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, Mapping, Optional

import torch
import torch.nn.functional as F
from torch import nn

from dynfix.errors import EngineError
from dynfix.models.description import LayerDescriptor, QuantizationParam
from dynfix.quantize.fixed_point import trim_to_dynamic_fixed_point

LayerCreator = Callable[[Mapping[str, Any], Optional[QuantizationParam]], nn.Module]

_REGISTRY: Dict[str, LayerCreator] = {}


# --- Quantized modules -------------------------------------------------------


class _DynamicFixedPointMixin:
    """Shared trimming logic for quantized conv / linear layers."""

    qparam: QuantizationParam

    def _trim_input(self, x: torch.Tensor) -> torch.Tensor:
        q = self.qparam
        if q.quantizes_input:
            return trim_to_dynamic_fixed_point(x, q.bw_layer_in, q.fl_layer_in)
        return x

    def _trim_output(self, x: torch.Tensor) -> torch.Tensor:
        q = self.qparam
        if q.quantizes_output:
            return trim_to_dynamic_fixed_point(x, q.bw_layer_out, q.fl_layer_out)
        return x

    def _trimmed_params(self, weight: torch.Tensor, bias: Optional[torch.Tensor]):
        q = self.qparam
        if not q.quantizes_params:
            return weight, bias
        weight = trim_to_dynamic_fixed_point(weight, q.bw_params, q.fl_params)
        if bias is not None:
            bias = trim_to_dynamic_fixed_point(bias, q.bw_params, q.fl_params)
        return weight, bias


class QuantConv2d(_DynamicFixedPointMixin, nn.Conv2d):
    """
    Convolution whose weights and activations are trimmed to dynamic fixed point.
    """

    def __init__(self, *args: Any, qparam: QuantizationParam, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.qparam = qparam

    def forward(self, input: torch.Tensor) -> torch.Tensor:
        weight, bias = self._trimmed_params(self.weight, self.bias)
        out = self._conv_forward(self._trim_input(input), weight, bias)
        return self._trim_output(out)


class QuantLinear(_DynamicFixedPointMixin, nn.Linear):
    """
    Fully connected layer whose weights and activations are trimmed to dynamic fixed point.
    """

    def __init__(self, *args: Any, qparam: QuantizationParam, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.qparam = qparam

    def forward(self, input: torch.Tensor) -> torch.Tensor:
        weight, bias = self._trimmed_params(self.weight, self.bias)
        out = F.linear(self._trim_input(input), weight, bias)
        return self._trim_output(out)


# --- Creators ----------------------------------------------------------------


def _conv_kwargs(params: Mapping[str, Any]) -> Dict[str, Any]:
    return dict(
        in_channels=int(params["in_channels"]),
        out_channels=int(params["out_channels"]),
        kernel_size=params["kernel_size"],
        stride=params.get("stride", 1),
        padding=params.get("padding", 0),
        dilation=params.get("dilation", 1),
        groups=int(params.get("groups", 1)),
        bias=bool(params.get("bias", True)),
    )


def _linear_kwargs(params: Mapping[str, Any]) -> Dict[str, Any]:
    return dict(
        in_features=int(params["in_features"]),
        out_features=int(params["out_features"]),
        bias=bool(params.get("bias", True)),
    )


def _create_convolution(params: Mapping[str, Any], qparam: Optional[QuantizationParam]) -> nn.Module:
    return nn.Conv2d(**_conv_kwargs(params))


def _create_quant_convolution(params: Mapping[str, Any], qparam: Optional[QuantizationParam]) -> nn.Module:
    return QuantConv2d(qparam=qparam or QuantizationParam(), **_conv_kwargs(params))


def _create_inner_product(params: Mapping[str, Any], qparam: Optional[QuantizationParam]) -> nn.Module:
    return nn.Linear(**_linear_kwargs(params))


def _create_quant_inner_product(params: Mapping[str, Any], qparam: Optional[QuantizationParam]) -> nn.Module:
    return QuantLinear(qparam=qparam or QuantizationParam(), **_linear_kwargs(params))


def _create_pooling(params: Mapping[str, Any], qparam: Optional[QuantizationParam]) -> nn.Module:
    method = str(params.get("method", "max")).lower()
    kwargs = dict(
        kernel_size=params["kernel_size"],
        stride=params.get("stride", params["kernel_size"]),
        padding=params.get("padding", 0),
    )
    if method == "max":
        return nn.MaxPool2d(**kwargs)
    if method in ("ave", "avg", "average"):
        return nn.AvgPool2d(**kwargs)
    raise EngineError(f"Pooling: unknown method '{method}'")


def register_layer(layer_type: str, creator: LayerCreator) -> None:
    _REGISTRY[layer_type] = creator


def is_supported(layer_type: str) -> bool:
    return layer_type in _REGISTRY


def build_layer(descriptor: LayerDescriptor) -> nn.Module:
    creator = _REGISTRY.get(descriptor.type)
    if creator is None:
        raise EngineError(f"Layer '{descriptor.name}': unsupported type '{descriptor.type}'")
    try:
        return creator(descriptor.params, descriptor.quantization)
    except (KeyError, TypeError, ValueError) as exc:
        raise EngineError(f"Layer '{descriptor.name}' ({descriptor.type}): bad params {dict(descriptor.params)}: {exc}") from exc


# --- Default registrations ---------------------------------------------------

register_layer("Convolution", _create_convolution)
register_layer("QuantConvolution", _create_quant_convolution)
register_layer("InnerProduct", _create_inner_product)
register_layer("QuantInnerProduct", _create_quant_inner_product)
register_layer("Pooling", _create_pooling)
register_layer("ReLU", lambda params, qparam: nn.ReLU())
register_layer("Flatten", lambda params, qparam: nn.Flatten())
register_layer("Dropout", lambda params, qparam: nn.Dropout(p=float(params.get("p", 0.5))))


__all__ = ["QuantConv2d", "QuantLinear", "register_layer", "build_layer", "is_supported"]
