"""
scripts/setup_model.py — Download the registered GGUF models for offline use.

Fetches each model file from its Hugging Face repository into the configured
model directory (``engine.model_dir``). Run this ONCE with internet access.
After that, labelling runs fully offline.

Usage:
    python scripts/setup_model.py                      # baseline model only
    python scripts/setup_model.py --models gemma-2b phi-3.5-mini
    python scripts/setup_model.py --all
    HUGGINGFACE_TOKEN=hf_... python scripts/setup_model.py --all
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
import time
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from allergen_slm.core.config import load_config  # noqa: E402
from allergen_slm.core.registry import (  # noqa: E402
    MODELS,
    ModelInfo,
    get_baseline_model,
    get_model_by_id,
)

logger = logging.getLogger(__name__)


def _setup_logging() -> None:
    """Configure stdout logging for the setup script."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stdout,
    )


def _check_hf_token() -> str | None:
    """Return a HuggingFace access token from the environment, if any."""
    token = os.environ.get("HUGGINGFACE_TOKEN") or os.environ.get("HF_TOKEN")
    if token:
        logger.info("HuggingFace token found in environment")
    else:
        logger.info("No HuggingFace token set; gated repositories will fail to download")
    return token


def download_model(model: ModelInfo, model_dir: Path, token: str | None) -> Path | None:
    """
    Download one registered model file into *model_dir*.

    Returns:
        The local file path, or ``None`` if the download failed.
    """
    from huggingface_hub import hf_hub_download

    target = model.path_in(model_dir)
    if target.exists():
        logger.info("✅ %s already present: %s", model.label, target)
        return target

    model_dir.mkdir(parents=True, exist_ok=True)
    logger.info("Downloading %s (~%.1f GB) from %s", model.label, model.size_gb, model.repo_id)

    t0 = time.time()
    try:
        path = hf_hub_download(
            repo_id=model.repo_id,
            filename=model.file_name,
            local_dir=str(model_dir),
            token=token,
        )
    except Exception as exc:  # noqa: BLE001
        logger.error("❌ Download of %s failed: %s", model.file_name, exc)
        return None

    logger.info("Download complete in %.0fs → %s", time.time() - t0, path)
    return Path(path)


def verify_model(path: Path) -> bool:
    """Check the file starts with the GGUF magic bytes."""
    try:
        with path.open("rb") as fh:
            magic = fh.read(4)
    except OSError as exc:
        logger.error("❌ Cannot read %s: %s", path, exc)
        return False
    if magic != b"GGUF":
        logger.error("❌ %s is not a GGUF file (magic %r)", path, magic)
        return False
    logger.info("✅ %s verified (%.2f GB)", path.name, path.stat().st_size / 1024**3)
    return True


def main() -> None:
    _setup_logging()

    parser = argparse.ArgumentParser(description="Download GGUF models for Allergen SLM")
    parser.add_argument("--models", nargs="+", default=None, help="Registered model ids")
    parser.add_argument("--all", action="store_true", help="Download every registered model")
    parser.add_argument("--model-dir", default=None, help="Target directory (default: engine.model_dir)")
    parser.add_argument("--config", default=None, help="Path to a YAML config file")
    args = parser.parse_args()

    cfg = load_config(args.config)
    model_dir = Path(args.model_dir) if args.model_dir else cfg.engine.resolved_model_dir

    if args.all:
        selected = list(MODELS)
    elif args.models:
        selected = []
        for model_id in args.models:
            info = get_model_by_id(model_id)
            if info is None:
                logger.error("Unknown model id: %s (known: %s)", model_id, ", ".join(m.id for m in MODELS))
                sys.exit(2)
            selected.append(info)
    else:
        selected = [get_baseline_model()]

    token = _check_hf_token()
    logger.info("═══ Allergen SLM — Model Setup ════════════════════")
    logger.info("  Models:    %s", ", ".join(m.id for m in selected))
    logger.info("  Model dir: %s", model_dir)
    logger.info("═══════════════════════════════════════════════════")

    failed = []
    for model in selected:
        path = download_model(model, model_dir, token)
        if path is None or not verify_model(path):
            failed.append(model.id)

    if failed:
        logger.error("Setup incomplete for: %s (re-run to retry)", ", ".join(failed))
        sys.exit(1)

    logger.info("✅ Setup complete! Label offline with:")
    logger.info('   python main.py predict "wheat flour, milk, eggs"')


if __name__ == "__main__":
    main()
