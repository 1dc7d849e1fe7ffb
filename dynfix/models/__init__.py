from .description import (
    DYNAMIC_FIXED_POINT,
    QUANTIZED_TYPES,
    LayerDescriptor,
    NetworkDescription,
    QuantizationParam,
    base_type,
    load_description,
    quantized_type,
    write_description,
)
from .runner import CalibrationSet, ForwardRunner, TorchForwardRunner, select_device

__all__ = [
    "DYNAMIC_FIXED_POINT",
    "QUANTIZED_TYPES",
    "LayerDescriptor",
    "NetworkDescription",
    "QuantizationParam",
    "base_type",
    "quantized_type",
    "load_description",
    "write_description",
    "CalibrationSet",
    "ForwardRunner",
    "TorchForwardRunner",
    "select_device",
]
