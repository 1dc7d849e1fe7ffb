# dynfix/errors.py
"""
Error taxonomy for calibration runs.

- ConfigurationError : bad flags / unwritable output / unknown trimming mode; raised before any work.
- EngineError        : the forward runner could not build, load or run a network.
- LayerNotFoundError : integer length requested for a layer that has no statistics.

None of these are retried; a run either completes or aborts.
"""


class DynfixError(Exception):
    """Base class for all calibration failures."""


class ConfigurationError(DynfixError, ValueError):
    pass


class EngineError(DynfixError, RuntimeError):
    pass


class LayerNotFoundError(DynfixError, LookupError):
    def __init__(self, layer_name: str, quantity: str = "") -> None:
        self.layer_name = layer_name
        self.quantity = quantity
        detail = f" ({quantity})" if quantity else ""
        super().__init__(f"No integer length for layer '{layer_name}'{detail}")


__all__ = ["DynfixError", "ConfigurationError", "EngineError", "LayerNotFoundError"]
