from .calibration import CalibrationConfig, TRIMMING_MODES, parse_gpu_ids

__all__ = ["CalibrationConfig", "TRIMMING_MODES", "parse_gpu_ids"]
