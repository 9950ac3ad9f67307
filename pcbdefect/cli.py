"""
Command-line entry point.

Usage::

    python -m pcbdefect info
    python -m pcbdefect train
    python -m pcbdefect test
    python -m pcbdefect predict path/to/board.jpg

``--config`` defaults to the first existing ``PCB_detect_6_700_yolo/data.yaml``
candidate (see ``pcbdefect.config.CONFIG_CANDIDATES``).
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

from .config import MODEL_NAME, OUTPUT_DIR, ClassDescriptions, RuntimeConfig, find_config_file, load_dataset_config
from .errors import BackendUnavailable, ConfigInvalid, ModelLoadFailed, TrainingFailed
from .evaluate import NO_DATA, render_report
from .runner import TrainingOrchestrator

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pcbdefect",
        description="PCB defect classification: train, test and predict on a YOLO dataset.",
    )
    parser.add_argument("--config", type=Path, default=None, help="Path to data.yaml.")
    parser.add_argument("--output-dir", type=Path, default=OUTPUT_DIR, help="Where the model bundle lives.")
    parser.add_argument("--model-name", default=MODEL_NAME, help="Bundle directory name under --output-dir.")
    parser.add_argument("--seed", type=int, default=0)
    parser.add_argument("--intra-op-threads", type=int, default=0, help="0 keeps the TensorFlow default.")
    parser.add_argument("--inter-op-threads", type=int, default=0, help="0 keeps the TensorFlow default.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("info", help="Show dataset classes.")
    sub.add_parser("train", help="Train a new model, save it, then evaluate on the test split.")
    sub.add_parser("test", help="Load the saved model and evaluate on the test split.")
    predict = sub.add_parser("predict", help="Predict the defect type of one image.")
    predict.add_argument("image", type=Path)
    return parser


# ═══════════════════════════════════════════════════════════════════════════
# Commands
# ═══════════════════════════════════════════════════════════════════════════

def _info(orchestrator: TrainingOrchestrator) -> int:
    config = orchestrator.config
    print("Dataset details:")
    print(f"Number of classes: {config.number_of_classes}")
    print("Classes:")
    for i, description in enumerate(orchestrator.descriptions.describe_all(config.class_names), start=1):
        print(f"  {i}. {description}")
    return 0


def _print_report(report, descriptions: ClassDescriptions) -> None:
    if report.status == NO_DATA:
        print(f"No {report.split} data available.")
    elif report.ok:
        print(render_report(report.metrics, descriptions))
    else:
        print(f"Evaluation error: {report.error}")


def _train(orchestrator: TrainingOrchestrator) -> int:
    print("\nStarting deep learning model training...")
    try:
        model = orchestrator.train()
    except (BackendUnavailable, TrainingFailed) as exc:
        print(f"Training failed: {exc}")
        return 1

    minutes = (orchestrator.last_training_seconds or 0.0) / 60.0
    print(f"\nTraining complete! Elapsed: {minutes:.2f} minutes")

    saved = orchestrator.save(model)

    print("\nEvaluating model on the test set...")
    _print_report(orchestrator.test(model, output_dir=saved.path if saved.ok else None), orchestrator.descriptions)

    if saved.ok:
        print(f"\nModel saved to: {saved.path}")
        return 0
    print(f"\nModel could not be saved: {saved.error}")
    return 1


def _load(orchestrator: TrainingOrchestrator):
    try:
        return orchestrator.load()
    except ModelLoadFailed as exc:
        print(f"Model file not found or unreadable: {exc}")
        print("Please train a model first.")
        return None


def _test(orchestrator: TrainingOrchestrator) -> int:
    model = _load(orchestrator)
    if model is None:
        return 1
    print("Evaluating model on the test set...")
    report = orchestrator.test(model, output_dir=orchestrator.runtime.model_dir)
    _print_report(report, orchestrator.descriptions)
    return 0 if report.ok or report.status == NO_DATA else 1


def _predict(orchestrator: TrainingOrchestrator, image: Path) -> int:
    if not image.is_file():
        print(f"Image file not found: {image}")
        return 1
    model = _load(orchestrator)
    if model is None:
        return 1
    print("Predicting...")
    result = orchestrator.predict_one(model, image)
    print(f"\nPrediction: {orchestrator.describe_prediction(result)}")
    return 0 if result.error is None else 1


# ═══════════════════════════════════════════════════════════════════════════
# Entry point
# ═══════════════════════════════════════════════════════════════════════════

def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
    )

    config_path = args.config or find_config_file()
    if config_path is None:
        print("Error: could not find data.yaml")
        print("Make sure PCB_detect_6_700_yolo/data.yaml exists or pass --config.")
        print(f"Current working directory: {Path.cwd()}")
        return 1

    try:
        config = load_dataset_config(config_path)
    except ConfigInvalid as exc:
        print(f"Error: {exc}")
        return 1
    print(f"Using config file: {config_path}")

    runtime = RuntimeConfig(
        intra_op_threads=args.intra_op_threads,
        inter_op_threads=args.inter_op_threads,
        seed=args.seed,
        output_dir=args.output_dir,
        model_name=args.model_name,
    )
    orchestrator = TrainingOrchestrator(config, runtime)

    if args.command == "info":
        return _info(orchestrator)
    if args.command == "train":
        return _train(orchestrator)
    if args.command == "test":
        return _test(orchestrator)
    if args.command == "predict":
        return _predict(orchestrator, args.image)
    return 2


if __name__ == "__main__":
    sys.exit(main())
