"""
Pipeline assembly: label encoding → image loading → classifier → label decoding.

``PipelineBuilder.build`` wires the stages around the trainer selected by
the backend initializer and binds the validation split (encoded and
loaded) to the classifier stage.  Nothing is trained until
``ClassificationPipeline.fit`` is called with the training split, which
returns a ``FittedPipeline``, the handle used for evaluation, saving and
prediction.

Stage chains
------------
Deep architectures::

    LabelEncoder → RawImageLoader (lazy tf.io.read_file) → ClassifierStage → LabelDecoder

``pixel_mlp`` (degraded path)::

    LabelEncoder → PixelFeatureLoader (PIL decode, 32×32, flatten) → ClassifierStage → LabelDecoder
"""

from __future__ import annotations

import dataclasses
import json
import logging
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import tensorflow as tf
from PIL import Image

from .backend import InitializedBackend
from .config import IMAGE, PIXEL_FEATURE_SIZE, PIXELS, TrainingProfile
from .data import Sample, SampleSet
from .errors import ModelLoadFailed, PredictionFailed, SaveFailed
from .train import ImageClassificationTrainer

logger = logging.getLogger(__name__)

BUNDLE_FORMAT_VERSION = 1
MODEL_FILE = "model.keras"
SCHEMA_FILE = "schema.json"
CLASSES_FILE = "classes.txt"


def sample_schema() -> Dict[str, str]:
    """Column name → type of the ``Sample`` rows the pipeline consumes."""
    return {f.name: getattr(f.type, "__name__", str(f.type)) for f in dataclasses.fields(Sample)}


# ═══════════════════════════════════════════════════════════════════════════
# Label stages
# ═══════════════════════════════════════════════════════════════════════════

class LabelEncoder:
    """Class name → dense integer key.

    The vocabulary is the declared class list, so keys are identical for
    every split no matter which classes a split happens to contain.
    """

    name = "map_value_to_key"

    def __init__(self, vocabulary: Sequence[str]):
        self.vocabulary: Tuple[str, ...] = tuple(vocabulary)
        self._keys = {label: key for key, label in enumerate(self.vocabulary)}

    def encode(self, label: str) -> int:
        try:
            return self._keys[label]
        except KeyError:
            raise ValueError(f"Label '{label}' is not in the vocabulary {list(self.vocabulary)}") from None

    def transform(self, samples: SampleSet) -> np.ndarray:
        return np.asarray([self.encode(s.label) for s in samples], dtype=np.int32)


class LabelDecoder:
    """Integer key → class name."""

    name = "map_key_to_value"

    def __init__(self, vocabulary: Sequence[str]):
        self.vocabulary: Tuple[str, ...] = tuple(vocabulary)

    def decode(self, key: int) -> str:
        return self.vocabulary[int(key)]

    def transform(self, keys: Sequence[int]) -> List[str]:
        return [self.decode(k) for k in keys]


# ═══════════════════════════════════════════════════════════════════════════
# Image loaders
# ═══════════════════════════════════════════════════════════════════════════

class RawImageLoader:
    """Image path → encoded bytes, read lazily when the dataset is iterated."""

    name = "load_raw_image_bytes"
    feature_mode = IMAGE

    def transform(self, samples: SampleSet) -> tf.data.Dataset:
        paths = tf.constant(samples.image_paths, dtype=tf.string)
        return tf.data.Dataset.from_tensor_slices(paths).map(tf.io.read_file)

    def to_dict(self) -> dict:
        return {"type": "raw_bytes"}


class PixelFeatureLoader:
    """Image path → flat float vector of a fixed-size RGB thumbnail in [0, 1]."""

    name = "extract_pixels"
    feature_mode = PIXELS

    def __init__(self, size: Tuple[int, int] = PIXEL_FEATURE_SIZE):
        self.size = tuple(size)

    def features(self, image_path: str) -> np.ndarray:
        with Image.open(image_path) as img:
            img = img.convert("RGB").resize(self.size)
            arr = np.asarray(img, dtype=np.float32) / 255.0
        return arr.reshape(-1)

    def transform(self, samples: SampleSet) -> tf.data.Dataset:
        h, w = self.size
        if samples.is_empty:
            matrix = np.zeros((0, h * w * 3), dtype=np.float32)
        else:
            matrix = np.stack([self.features(p) for p in samples.image_paths])
        return tf.data.Dataset.from_tensor_slices(matrix)

    def to_dict(self) -> dict:
        return {"type": "pixels", "size": list(self.size)}


def loader_for(feature_mode: str):
    if feature_mode == PIXELS:
        return PixelFeatureLoader()
    return RawImageLoader()


def loader_from_dict(data: dict):
    if data.get("type") == "pixels":
        return PixelFeatureLoader(tuple(data.get("size", PIXEL_FEATURE_SIZE)))
    if data.get("type") == "raw_bytes":
        return RawImageLoader()
    raise ValueError(f"Unknown image loader {data!r}")


# ═══════════════════════════════════════════════════════════════════════════
# Classifier stage
# ═══════════════════════════════════════════════════════════════════════════

class ClassifierStage:
    """The backend trainer plus the validation data it monitors."""

    name = "image_classification"

    def __init__(self, trainer: ImageClassificationTrainer, validation: Optional[tf.data.Dataset] = None):
        self.trainer = trainer
        self.validation = validation

    def fit(self, features: tf.data.Dataset, keys: np.ndarray, seed: int = 0) -> None:
        train_ds = tf.data.Dataset.zip((features, tf.data.Dataset.from_tensor_slices(keys)))
        self.trainer.fit(train_ds, self.validation, seed=seed)


# ═══════════════════════════════════════════════════════════════════════════
# Unfitted pipeline
# ═══════════════════════════════════════════════════════════════════════════

class ClassificationPipeline:
    """Ordered stages, ready to be fitted on a training split."""

    def __init__(
        self,
        encoder: LabelEncoder,
        loader,
        classifier: ClassifierStage,
        decoder: LabelDecoder,
        profile: TrainingProfile,
    ):
        self.encoder = encoder
        self.loader = loader
        self.classifier = classifier
        self.decoder = decoder
        self.profile = profile

    @property
    def stages(self) -> list:
        return [self.encoder, self.loader, self.classifier, self.decoder]

    @property
    def name(self) -> str:
        return " >> ".join(s.name for s in self.stages)

    def fit(self, train_set: SampleSet, seed: int = 0) -> "FittedPipeline":
        """Encode, load and train.  Exceptions from the backend propagate."""
        keys = self.encoder.transform(train_set)
        features = self.loader.transform(train_set)
        self.classifier.fit(features, keys, seed=seed)
        return FittedPipeline(
            encoder=self.encoder,
            loader=self.loader,
            trainer=self.classifier.trainer,
            decoder=self.decoder,
            profile=self.profile,
            training_summary={
                "split": train_set.split,
                "samples": len(train_set),
                "label_counts": train_set.label_counts(),
            },
        )


class PipelineBuilder:
    """Assemble the stage chain for the selected backend profile."""

    def __init__(self, class_names: Sequence[str]):
        self.class_names = tuple(class_names)

    def build(self, validation_set: SampleSet, backend: InitializedBackend) -> ClassificationPipeline:
        """Wire the stages and bind the (encoded, loaded) validation split.

        Only the validation inputs are prepared here; training happens in
        ``ClassificationPipeline.fit``.
        """
        trainer = backend.trainer
        encoder = LabelEncoder(self.class_names)
        decoder = LabelDecoder(self.class_names)
        loader = loader_for(trainer.feature_mode)

        validation = None
        if validation_set.is_empty:
            logger.warning("Validation split is empty, early stopping will monitor training loss")
        else:
            validation = tf.data.Dataset.zip((
                loader.transform(validation_set),
                tf.data.Dataset.from_tensor_slices(encoder.transform(validation_set)),
            ))

        pipeline = ClassificationPipeline(
            encoder=encoder,
            loader=loader,
            classifier=ClassifierStage(trainer, validation),
            decoder=decoder,
            profile=backend.profile,
        )
        logger.info("Built pipeline [%s] for %s profile", pipeline.name, backend.profile.name)
        return pipeline


# ═══════════════════════════════════════════════════════════════════════════
# Fitted pipeline (the model handle)
# ═══════════════════════════════════════════════════════════════════════════

class FittedPipeline:
    """A trained pipeline: score, decode, save, load."""

    def __init__(
        self,
        encoder: LabelEncoder,
        loader,
        trainer: ImageClassificationTrainer,
        decoder: LabelDecoder,
        profile: TrainingProfile,
        input_schema: Optional[Dict[str, str]] = None,
        training_summary: Optional[dict] = None,
    ):
        self.encoder = encoder
        self.loader = loader
        self.trainer = trainer
        self.decoder = decoder
        self.profile = profile
        self.input_schema = dict(input_schema) if input_schema is not None else sample_schema()
        self.training_summary = training_summary or {}

    @property
    def class_names(self) -> Tuple[str, ...]:
        return self.encoder.vocabulary

    def check_input_schema(self) -> None:
        expected = sample_schema()
        if self.input_schema != expected:
            raise PredictionFailed(
                f"Model expects input columns {self.input_schema}, "
                f"but samples provide {expected}"
            )

    def score(self, samples: SampleSet) -> np.ndarray:
        """Class probabilities, shape ``(len(samples), num_classes)``."""
        self.check_input_schema()
        if samples.is_empty:
            return np.zeros((0, len(self.class_names)), dtype=np.float32)
        return self.trainer.predict_scores(self.loader.transform(samples))

    def predict_labels(self, samples: SampleSet) -> List[str]:
        scores = self.score(samples)
        return self.decoder.transform(np.argmax(scores, axis=1).tolist())

    # ── Persistence ─────────────────────────────────────────────────────

    def schema(self) -> dict:
        return {
            "format_version": BUNDLE_FORMAT_VERSION,
            "input_columns": self.input_schema,
            "class_names": list(self.class_names),
            "profile": self.profile.to_dict(),
            "loader": self.loader.to_dict(),
            "training": self.training_summary,
        }

    def save(self, directory: Path) -> Path:
        """Write ``model.keras`` + ``schema.json`` + ``classes.txt``.

        Raises
        ------
        SaveFailed
            Wraps filesystem and serialisation errors.
        """
        directory = Path(directory)
        try:
            directory.mkdir(parents=True, exist_ok=True)
            self.trainer.save(directory / MODEL_FILE)
            (directory / SCHEMA_FILE).write_text(
                json.dumps(self.schema(), indent=2, ensure_ascii=False), encoding="utf-8",
            )
            (directory / CLASSES_FILE).write_text("\n".join(self.class_names) + "\n", encoding="utf-8")
        except Exception as exc:
            raise SaveFailed(f"Error saving model to {directory}: {exc}") from exc
        logger.info("Saved model bundle to %s", directory)
        return directory

    @classmethod
    def load(cls, directory: Path, verbose: int = 1) -> "FittedPipeline":
        """Read a bundle written by ``save``.

        Raises
        ------
        ModelLoadFailed
            If the bundle is missing, incomplete or unreadable.
        """
        directory = Path(directory)
        model_path = directory / MODEL_FILE
        schema_path = directory / SCHEMA_FILE
        if not model_path.exists() or not schema_path.exists():
            raise ModelLoadFailed(f"Model bundle not found or incomplete: {directory}")

        try:
            schema = json.loads(schema_path.read_text(encoding="utf-8"))
            class_names = schema["class_names"]
            profile = TrainingProfile.from_dict(schema["profile"])
            loader = loader_from_dict(schema["loader"])
        except (OSError, ValueError, KeyError, TypeError) as exc:
            raise ModelLoadFailed(f"Unreadable schema {schema_path}: {exc}") from exc

        try:
            trainer = ImageClassificationTrainer.load(model_path, profile, verbose=verbose)
        except Exception as exc:
            raise ModelLoadFailed(f"Cannot load model {model_path}: {exc}") from exc

        logger.info(
            "Loaded model bundle %s (%s, %d classes)",
            directory, profile.architecture, len(class_names),
        )
        return cls(
            encoder=LabelEncoder(class_names),
            loader=loader,
            trainer=trainer,
            decoder=LabelDecoder(class_names),
            profile=profile,
            input_schema=schema.get("input_columns", {}),
            training_summary=schema.get("training", {}),
        )
