from .overwatch import format_calibration_summary, initialize_overwatch

__all__ = [
    "initialize_overwatch",
    "format_calibration_summary",
]
