"""
Training orchestrator: scan → initialise → build → fit → evaluate.

This is the main entry point for a complete training cycle:

1. Scan the train and validation splits into ``SampleSet``\\ s.
2. Walk the backend fallback ladder (``BackendUnavailable`` is fatal).
3. Build the stage chain bound to the validation split.
4. Fit on the training split (any backend error → ``TrainingFailed``,
   never retried).
5. Evaluate on the validation split.

After training, ``save`` / ``load`` / ``test`` / ``predict_one`` operate on
the returned ``FittedPipeline``.  Their failures are logged and turned into
result values, since a trained model is still useful when, say, saving it
fails.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Optional, Sequence

from .backend import BackendInitializer, InitializedBackend, KerasTrainerFactory, TrainerFactory, remediation_hints
from .config import ClassDescriptions, DatasetConfig, HardwareProfile, RuntimeConfig, TrainingProfile
from .data import SampleSet, ScanOptions, load_split
from .errors import EvaluationFailed, ModelLoadFailed, PredictionFailed, SaveFailed, TrainingFailed
from .evaluate import FAILED, NO_DATA, OK, EvaluationReport, evaluate_pipeline, save_report
from .predict import PredictionResult, predict_image

if TYPE_CHECKING:
    from .pipeline import FittedPipeline

logger = logging.getLogger(__name__)

CONFIG_SNAPSHOT_FILE = "config.json"


@dataclass(frozen=True)
class SaveResult:
    ok: bool
    path: Path
    error: Optional[str] = None


class TrainingOrchestrator:
    """Runs one dataset through the whole pipeline, strictly sequentially.

    Parameters
    ----------
    config : DatasetConfig
        Parsed dataset configuration.
    runtime : RuntimeConfig
        Seed, thread hints, output location.  Read-only for the run.
    descriptions : ClassDescriptions, optional
        Class-name → description mapping used in reports.
    hardware : HardwareProfile, optional
        Detected once here when not given.
    factory : TrainerFactory, optional
        Trainer factory for the backend initializer
        (default ``KerasTrainerFactory(runtime)``).
    candidates : sequence of TrainingProfile, optional
        Overrides the default fallback ladder.
    scan_options : ScanOptions, optional
        images → labels directory mapping.
    """

    def __init__(
        self,
        config: DatasetConfig,
        runtime: RuntimeConfig = RuntimeConfig(),
        descriptions: Optional[ClassDescriptions] = None,
        hardware: Optional[HardwareProfile] = None,
        factory: Optional[TrainerFactory] = None,
        candidates: Optional[Sequence[TrainingProfile]] = None,
        scan_options: Optional[ScanOptions] = None,
    ):
        self.config = config
        self.runtime = runtime
        self.descriptions = descriptions or ClassDescriptions()
        self.hardware = hardware or HardwareProfile.detect()
        self.scan_options = scan_options or ScanOptions()
        self.initializer = BackendInitializer(
            num_classes=len(config.class_names),
            factory=factory or KerasTrainerFactory(runtime),
            candidates=candidates,
        )
        self.backend: Optional[InitializedBackend] = None
        self.last_training_seconds: Optional[float] = None

    # ── Data ────────────────────────────────────────────────────────────

    def load_split(self, split: str) -> SampleSet:
        """Re-scan ``split`` from disk (no caching)."""
        return load_split(self.config, split, self.scan_options)

    # ── Training ────────────────────────────────────────────────────────

    def train(self) -> FittedPipeline:
        """Execute scan → initialise → build → fit → evaluate.

        Returns
        -------
        FittedPipeline
            The trained model handle.

        Raises
        ------
        BackendUnavailable
            No candidate profile could be constructed.
        TrainingFailed
            No training samples, or the backend raised while fitting.
        """
        # ── 1. Load data ────────────────────────────────────────────
        logger.info("Loading training data…")
        train_set = self.load_split("train")
        val_set = self.load_split("val")
        logger.info("Training samples: %d", len(train_set))
        logger.info("Validation samples: %d", len(val_set))

        if train_set.is_empty:
            raise TrainingFailed(
                f"No training samples found under '{self.config.train_path}'",
                hints=["Check the 'train' path in data.yaml and the images/labels layout."],
            )

        # ── 2. Initialise backend (fatal on failure) ───────────────
        logger.info("Initializing training backend…")
        self.backend = self.initializer.initialize(self.hardware)
        profile = self.backend.profile

        # TensorFlow is importable once a profile has constructed
        from .pipeline import PipelineBuilder

        # ── 3. Build + 4. fit ───────────────────────────────────────
        started = time.monotonic()
        try:
            logger.info("Building pipeline…")
            pipeline = PipelineBuilder(self.config.class_names).build(val_set, self.backend)
            logger.info(
                "Starting model training with %s profile (%s)… "
                "this may take a while depending on your hardware",
                profile.name, profile.architecture,
            )
            model = pipeline.fit(train_set, seed=self.runtime.seed)
        except Exception as exc:
            hints = remediation_hints([exc])
            logger.exception(
                "Training failed with %s profile (%s): %s",
                profile.name, profile.architecture, exc,
            )
            for hint in hints:
                logger.error("  * %s", hint)
            raise TrainingFailed(f"Training failed: {exc}", hints) from exc

        self.last_training_seconds = time.monotonic() - started
        logger.info("Training finished in %.2f minutes", self.last_training_seconds / 60.0)

        # ── 5. Evaluate on validation ───────────────────────────────
        if val_set.is_empty:
            logger.warning("No validation data, skipping validation evaluation")
        else:
            self.evaluate(model, val_set)

        return model

    # ── Evaluation ──────────────────────────────────────────────────────

    def evaluate(self, model: FittedPipeline, samples: SampleSet, output_dir: Optional[Path] = None) -> EvaluationReport:
        """Score ``samples``; failures come back as a ``failed`` report."""
        if samples.is_empty:
            return EvaluationReport(status=NO_DATA, split=samples.split)
        try:
            metrics = evaluate_pipeline(model, samples)
        except EvaluationFailed as exc:
            logger.error("Evaluation error: %s", exc)
            return EvaluationReport(status=FAILED, split=samples.split, error=str(exc))

        if output_dir is not None:
            try:
                save_report(metrics, output_dir, prefix=f"{samples.split}_", descriptions=self.descriptions)
            except OSError as exc:
                logger.warning("Could not write evaluation artefacts to %s: %s", output_dir, exc)

        return EvaluationReport(status=OK, split=samples.split, metrics=metrics)

    def test(self, model: FittedPipeline, output_dir: Optional[Path] = None) -> EvaluationReport:
        """Evaluate on a fresh scan of the test split.

        An empty test split returns a ``no_data`` report without scoring.
        """
        logger.info("Testing model with test dataset…")
        test_set = self.load_split("test")
        if test_set.is_empty:
            logger.info("No test data available.")
            return EvaluationReport(status=NO_DATA, split=test_set.split)
        return self.evaluate(model, test_set, output_dir=output_dir)

    # ── Persistence ─────────────────────────────────────────────────────

    def save(self, model: FittedPipeline, path: Optional[Path] = None) -> SaveResult:
        """Write the bundle plus a ``config.json`` run snapshot."""
        path = Path(path) if path is not None else self.runtime.model_dir
        logger.info("Saving model to: %s", path)
        try:
            model.save(path)
            (path / CONFIG_SNAPSHOT_FILE).write_text(
                json.dumps(self._snapshot(), indent=2, ensure_ascii=False), encoding="utf-8",
            )
        except SaveFailed as exc:
            logger.error("Error saving model: %s", exc)
            return SaveResult(ok=False, path=path, error=str(exc))
        except OSError as exc:
            logger.error("Error saving run snapshot: %s", exc)
            return SaveResult(ok=False, path=path, error=str(exc))
        logger.info("Model saved successfully!")
        return SaveResult(ok=True, path=path)

    def load(self, path: Optional[Path] = None) -> FittedPipeline:
        """Load a saved bundle (raises ``ModelLoadFailed``)."""
        path = Path(path) if path is not None else self.runtime.model_dir
        logger.info("Loading model: %s", path)
        try:
            from .pipeline import FittedPipeline
        except ImportError as exc:
            raise ModelLoadFailed(
                f"TensorFlow is required to load {path}: {exc}\n"
                + "\n".join(f"  * {h}" for h in remediation_hints([exc]))
            ) from exc
        return FittedPipeline.load(path, verbose=self.runtime.verbose)

    def _snapshot(self) -> dict:
        return {
            "dataset": self.config.to_dict(),
            "runtime": self.runtime.to_dict(),
            "hardware": {
                "machine": self.hardware.machine,
                "is_arm": self.hardware.is_arm,
                "cpu_count": self.hardware.cpu_count,
            },
            "backend_attempts": [a.to_dict() for a in self.backend.attempts] if self.backend else [],
            "training_seconds": self.last_training_seconds,
        }

    # ── Prediction ──────────────────────────────────────────────────────

    def predict_one(self, model: FittedPipeline, image_path: str | Path) -> PredictionResult:
        """Predict one image; errors yield an ``ERROR_LABEL`` result."""
        try:
            return predict_image(model, image_path)
        except PredictionFailed as exc:
            logger.error("Prediction error: %s", exc)
            return PredictionResult.failed(str(image_path), str(exc))

    def describe_prediction(self, result: PredictionResult) -> str:
        return result.format(self.descriptions)
