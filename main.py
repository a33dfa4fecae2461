"""
main.py — Allergen SLM command-line entry point.

Loads one model, labels ingredient lists and prints the wire result (or the
model diagnostics).

Usage:
    python main.py predict "wheat flour, sugar, milk powder"
    python main.py predict --model gemma-2b --file ingredients.txt
    python main.py info --model models/qwen2.5-1.5b-instruct-q4_k_m.gguf
"""

from __future__ import annotations

import argparse
import logging
import sys
import traceback
from pathlib import Path

from allergen_slm.core.config import AllergenSLMConfig, load_config
from allergen_slm.core.logger import configure_logger, get_logger
from allergen_slm.core.registry import get_model_by_id
from allergen_slm.service import AllergenPredictor, parse_result

# ──────────────────────────────────────────────────────────────
# Argument parsing
# ──────────────────────────────────────────────────────────────


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="allergen-slm",
        description="On-device allergen labelling with a small language model",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    p.add_argument("--config", default=None, help="Path to a YAML config file")
    p.add_argument(
        "--model",
        default=None,
        help="Registered model id, GGUF file, or HF checkpoint (default: engine.default_model)",
    )
    p.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARN"],
        default=None,
        help="Minimum log level for stderr output (default: logging.level)",
    )
    p.add_argument("--log-dir", default=None, help="Directory for JSONL logs")

    sub = p.add_subparsers(dest="command", required=True)

    pred = sub.add_parser("predict", help="Label one or more ingredient lists")
    pred.add_argument("ingredients", nargs="*", help="Ingredient text (one label per argument)")
    pred.add_argument("--file", default=None, help="Read ingredient lists from a file, one per line")
    pred.add_argument("--raw", action="store_true", help="Print the wire string instead of a summary")

    sub.add_parser("info", help="Load the model and print its diagnostics")
    return p


# ──────────────────────────────────────────────────────────────
# Helpers
# ──────────────────────────────────────────────────────────────


def resolve_model_path(model: str | None, cfg: AllergenSLMConfig) -> str:
    """
    Map a registry id to ``<model_dir>/<file>``; anything else is used as given.
    """
    name = model or cfg.engine.default_model
    info = get_model_by_id(name)
    if info is not None:
        return str(info.path_in(cfg.engine.resolved_model_dir))
    return name


def _read_inputs(args: argparse.Namespace) -> list[str]:
    texts = list(args.ingredients)
    if args.file:
        with Path(args.file).open("r", encoding="utf-8") as fh:
            texts.extend(line.strip() for line in fh if line.strip())
    return texts


def _print_result(text: str, wire: str, raw: bool) -> None:
    if raw:
        print(wire)
        return
    parsed = parse_result(wire)
    print(f"Ingredients: {text}")
    if parsed.is_error:
        print(f"  {parsed.payload}")
    else:
        print(f"  Allergens: {parsed.label}")
    print(
        f"  TTFT {parsed.ttft_ms} ms | ITPS {parsed.itps} tok/s | "
        f"OTPS {parsed.otps} tok/s | OET {parsed.oet_ms} ms"
    )


# ──────────────────────────────────────────────────────────────
# Main
# ──────────────────────────────────────────────────────────────


def main(argv: list[str] | None = None) -> int:
    """Application entry point. Returns process exit code."""
    args = _build_parser().parse_args(argv)

    cfg = load_config(args.config)
    level_name = args.log_level or cfg.logging.level
    level_map = {"DEBUG": logging.DEBUG, "INFO": logging.INFO, "WARN": logging.WARNING}
    logging.basicConfig(level=level_map.get(level_name.upper(), logging.INFO))
    configure_logger(args.log_dir or cfg.logging.log_dir)

    log = get_logger()
    model_path = resolve_model_path(args.model, cfg)
    log.info("main", "args_parsed", {"command": args.command, "model_path": model_path})

    predictor = AllergenPredictor(cfg)
    exit_code = 0
    try:
        if not predictor.load_model(None, model_path):
            print(f"[ERROR] Could not load model: {model_path}", file=sys.stderr)
            return 1

        if args.command == "info":
            print(predictor.get_model_info(), end="")
        else:
            texts = _read_inputs(args)
            if not texts:
                print("[ERROR] No ingredient text given", file=sys.stderr)
                exit_code = 2
            for text in texts:
                wire = predictor.predict_allergens(text)
                _print_result(text, wire, args.raw)
                if parse_result(wire).is_error:
                    exit_code = 1
    except KeyboardInterrupt:
        print("\n[INFO] Interrupted", file=sys.stderr)
        exit_code = 130
    except Exception:  # noqa: BLE001
        tb = traceback.format_exc()
        print(tb, file=sys.stderr)
        log.error("main", "unhandled_exception", {"traceback": tb})
        exit_code = 1
    finally:
        predictor.unload_model()
        log.flush()

    return exit_code


if __name__ == "__main__":
    sys.exit(main())
