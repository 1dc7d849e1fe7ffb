"""
Pipeline utilities for running a complete calibration search.

`search` pulls in the models and quantize stacks; it is loaded on first access so
that importing `dynfix.pipeline` stays cheap.
"""

from importlib import import_module
from types import ModuleType
from typing import Any

__all__ = ("search",)


def __getattr__(name: str) -> ModuleType:
    if name in __all__:
        module = import_module(f"{__name__}.{name}")
        globals()[name] = module
        return module
    raise AttributeError(f"module '{__name__}' has no attribute '{name}'")


def __dir__() -> Any:
    return sorted(list(globals().keys()) + list(__all__))
