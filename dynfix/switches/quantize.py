# dynfix/switches/quantize.py
# -*- coding: utf-8 -*-
"""
CLI entry for dynamic fixed-point calibration.

This script:
  1. Reads the float network description, trained weights and calibration set.
  2. Measures baseline accuracy and per-layer ranges on the calibration set.
  3. Scores CONV weights, FC weights and layer activations at the candidate bit-widths.
  4. Scores the combined dynamic fixed-point net and writes its description.
  5. Prints the accuracy summary (optionally saved as JSON).

Example:
    dynfix-quantize --model lenet.json --weights lenet.pt --data calib.pt \
        --model-quantized lenet_dfp.json --iterations 100 --gpus 0
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from dynfix.conf import CalibrationConfig, TRIMMING_MODES, parse_gpu_ids
from dynfix.errors import DynfixError
from dynfix.models.runner import CalibrationSet, TorchForwardRunner, select_device
from dynfix.overwatch import initialize_overwatch
from dynfix.pipeline.search import SearchOrchestrator

# Initialize Overwatch =>> Wraps `logging.Logger`
overwatch = initialize_overwatch(__name__)


# ------------------------------------------------------------------------------
# CLI
# ------------------------------------------------------------------------------

def build_argparser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Dynamic fixed-point calibration of a trained network")
    p.add_argument("--config", type=str, default=None,
                   help="Optional JSON config; command line flags override its values")
    p.add_argument("--model", type=str, default=None, help="Network description (.json) of the float net")
    p.add_argument("--weights", type=str, default=None, help="Trained weights (torch state dict)")
    p.add_argument("--model-quantized", type=str, default=None,
                   help="Output path of the quantized network description")
    p.add_argument("--data", type=str, default=None,
                   help="Calibration set (.pt with 'inputs' and 'labels' tensors)")
    p.add_argument("--iterations", type=int, default=None, help="Calibration batches per scoring pass")
    p.add_argument("--batch-size", type=int, default=None, help="Samples per calibration batch")
    p.add_argument("--trimming-mode", type=str, default=None,
                   help=f"Quantization scheme ({', '.join(TRIMMING_MODES)})")
    p.add_argument("--bitwidth-weights", type=int, nargs="+", default=None,
                   help="Candidate bit-widths for CONV and FC parameters")
    p.add_argument("--bitwidth-activations", type=int, nargs="+", default=None,
                   help="Candidate bit-widths for layer activations")
    p.add_argument("--gpus", type=str, default=None, help="'all', a comma separated id list, or empty for CPU")
    p.add_argument("--score-number", type=int, default=None, help="Network output used as accuracy")
    p.add_argument("--max-accuracy-drop", type=float, default=None,
                   help="Reject candidate bit-widths losing more than this w.r.t. baseline")
    p.add_argument("--activation-il-offset", type=int, default=None,
                   help="Added to activation integer lengths (e.g. -1)")
    p.add_argument("--summary-json", type=str, default=None,
                   help="Optional path to save the calibration summary as JSON")
    return p


def _cli_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    return {
        "model": args.model,
        "weights": args.weights,
        "model_quantized": args.model_quantized,
        "data": args.data,
        "iterations": args.iterations,
        "batch_size": args.batch_size,
        "trimming_mode": args.trimming_mode,
        "bitwidth_weights": args.bitwidth_weights,
        "bitwidth_activations": args.bitwidth_activations,
        "gpus": args.gpus,
        "score_number": args.score_number,
        "max_accuracy_drop": args.max_accuracy_drop,
        "activation_il_offset": args.activation_il_offset,
    }


def resolve_config(args: argparse.Namespace) -> CalibrationConfig:
    cfg = CalibrationConfig.load_json(args.config) if args.config else CalibrationConfig.from_env()
    return cfg.merge(_cli_overrides(args)).validate()


# ------------------------------------------------------------------------------
# Core
# ------------------------------------------------------------------------------

def run(cfg: CalibrationConfig, summary_json: Optional[str] = None) -> Dict[str, Any]:
    device = select_device(parse_gpu_ids(cfg.gpus))
    data = CalibrationSet.load(cfg.data, batch_size=cfg.batch_size)
    runner = TorchForwardRunner(data, device=device)

    result = SearchOrchestrator(cfg, runner).run()
    summary = result.to_dict()
    if summary_json:
        path = Path(summary_json)
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8") as f:
            json.dump(summary, f, indent=2, ensure_ascii=False)
        overwatch.info(f"[Save] calibration summary written to: {path}")
    return summary


def main(argv: Optional[List[str]] = None) -> None:
    parser = build_argparser()
    args = parser.parse_args(argv)

    try:
        cfg = resolve_config(args)
        overwatch.info(f"[Config] model={cfg.model} weights={cfg.weights} iterations={cfg.iterations}")
        overwatch.info(
            f"[Config] trimming_mode={cfg.trimming_mode} bitwidth_weights={cfg.bitwidth_weights} "
            f"bitwidth_activations={cfg.bitwidth_activations}"
        )
        run(cfg, summary_json=args.summary_json)
    except DynfixError as e:
        overwatch.error(f"[Error] {e}")
        sys.exit(1)
    except OSError as e:
        overwatch.error(f"[Error] I/O failure: {e}")
        sys.exit(1)

    overwatch.info("[Done] Calibration completed.")


# ------------------------------------------------------------------------------
# Entry point
# ------------------------------------------------------------------------------

if __name__ == "__main__":
    main()
