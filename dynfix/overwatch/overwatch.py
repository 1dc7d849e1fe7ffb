"""
overwatch.py

Utility class for creating a centralized/standardized logger (built on Rich) and the textual calibration report.
"""
import logging
import logging.config
import time
from contextlib import contextmanager
from logging import LoggerAdapter
from typing import Any, ClassVar, Dict, List, MutableMapping, Tuple

# Overwatch Default Format String
RICH_FORMATTER, DATEFMT = "| >> %(message)s", "%m/%d [%H:%M:%S]"

# Set Logging Configuration
LOG_CONFIG = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {"simple-console": {"format": RICH_FORMATTER, "datefmt": DATEFMT}},
    "handlers": {
        "console": {
            "class": "rich.logging.RichHandler",
            "formatter": "simple-console",
            "markup": False,
            "rich_tracebacks": True,
            "show_level": True,
            "show_path": True,
            "show_time": True,
        }
    },
    "root": {"level": "INFO", "handlers": ["console"]},
}
logging.config.dictConfig(LOG_CONFIG)


# === Custom Contextual Logging Logic ===
class ContextAdapter(LoggerAdapter):
    CTX_PREFIXES: ClassVar[Dict[int, str]] = {**{0: "[*] "}, **{idx: "|=> ".rjust(4 + (idx * 4)) for idx in [1, 2, 3]}}

    def process(self, msg: str, kwargs: MutableMapping[str, Any]) -> Tuple[str, MutableMapping[str, Any]]:
        ctx_level = kwargs.pop("ctx_level", 0)
        return f"{self.CTX_PREFIXES[ctx_level]}{msg}", kwargs


class _ScopedLoggerMixin:
    def __init__(self, logger: ContextAdapter) -> None:
        self._scope_depth = 0
        self._scoped_logger = logger

    @contextmanager
    def scoped(self, message: str) -> Any:
        level = min(self._scope_depth, 3)
        self._scoped_logger.info(f"{message} (start)", ctx_level=level)
        self._scope_depth += 1
        start = time.time()
        try:
            yield
        finally:
            self._scope_depth = max(0, self._scope_depth - 1)
            duration = time.time() - start
            self._scoped_logger.info(f"{message} (done in {duration:.2f}s, depth={level})", ctx_level=level)


class PureOverwatch(_ScopedLoggerMixin):
    def __init__(self, name: str) -> None:
        """Initializer for an Overwatch object that just wraps logging."""
        self.logger = ContextAdapter(logging.getLogger(name), extra={})
        super().__init__(self.logger)

        # Logger Delegation (for convenience; would be nice to just compose & dynamic dispatch eventually)
        self.debug = self.logger.debug
        self.info = self.logger.info
        self.warning = self.logger.warning
        self.error = self.logger.error
        self.critical = self.logger.critical

        # Logging Defaults =>> INFO
        self.logger.setLevel(logging.INFO)


def initialize_overwatch(name: str) -> PureOverwatch:
    return PureOverwatch(name)


def format_calibration_summary(result: Any) -> str:
    """
    Produce the human-readable accuracy analysis after a calibration run.

    `result` is a `dynfix.pipeline.search.CalibrationResult` (duck-typed to keep this module import-light).
    """
    lines: List[str] = [
        "------------------------------",
        "Network accuracy analysis for convolutional (CONV) and fully connected (FC) layers.",
        f"Baseline 32-bit float: {result.baseline_accuracy:.6f}",
    ]
    sections = (
        ("Dynamic fixed-point CONV weights:", result.conv_weights),
        ("Dynamic fixed-point FC weights:", result.fc_weights),
        ("Dynamic fixed-point layer activations:", result.activations),
    )
    for title, category in sections:
        lines.append(title)
        for trial in category.trials:
            lines.append(f"  {trial.bitwidth}-bit: \t{trial.accuracy:.6f}")
    lines.extend(
        [
            "Dynamic fixed-point net:",
            f"  {result.conv_weights.bitwidth}-bit CONV weights,",
            f"  {result.fc_weights.bitwidth}-bit FC weights,",
            f"  {result.activations.bitwidth}-bit layer activations:",
            f"Accuracy: {result.combined_accuracy:.6f}",
            "Please fine-tune.",
        ]
    )
    return "\n".join(lines)
