"""
Keras classifiers behind the training profiles.

Deep architectures (ResNet / MobileNet / Inception) follow the transfer
learning recipe of a frozen ImageNet base::

    Input(H,W,3)  [raw 0-255 pixels, decoded by the trainer]
      → Rescaling to [-1, 1]           (where the base expects it)
      → <Application>(include_top=False, frozen)
      → GlobalAveragePooling2D
      → Dropout(0.2)
      → Dense(num_classes)             ← raw logits, no softmax

The ``pixel_mlp`` architecture is the degraded path: the pipeline feeds it
flat 32×32×3 pixel vectors and it trains a small dense network.

All models output **raw logits**; probabilities are produced with
``tf.nn.softmax`` at scoring time.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Optional, Tuple

import numpy as np
import tensorflow as tf
from tensorflow.keras.callbacks import EarlyStopping
from tensorflow.keras.layers import Dense, Dropout, GlobalAveragePooling2D, Input, Rescaling
from tensorflow.keras.optimizers import Adam

from .config import IMAGE, PIXEL_FEATURE_SIZE, PIXELS, RuntimeConfig, TrainingProfile

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Architecture registry
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ArchitectureSpec:
    """How to build one architecture and what input it expects."""

    name: str
    feature_mode: str
    image_size: Tuple[int, int] = (224, 224)
    application: Optional[Callable[..., tf.keras.Model]] = None
    rescale: bool = True  # map 0-255 → [-1, 1] before the base

    @property
    def feature_length(self) -> int:
        h, w = self.image_size
        return h * w * 3


ARCHITECTURES: Dict[str, ArchitectureSpec] = {
    "resnet_v2_101": ArchitectureSpec(
        "resnet_v2_101", IMAGE, (224, 224), tf.keras.applications.ResNet101V2,
    ),
    "resnet_v2_50": ArchitectureSpec(
        "resnet_v2_50", IMAGE, (224, 224), tf.keras.applications.ResNet50V2,
    ),
    "inception_v3": ArchitectureSpec(
        "inception_v3", IMAGE, (299, 299), tf.keras.applications.InceptionV3,
    ),
    "mobilenet_v2": ArchitectureSpec(
        "mobilenet_v2", IMAGE, (224, 224), tf.keras.applications.MobileNetV2,
    ),
    # MobileNetV3 carries its own preprocessing layer
    "mobilenet_v3_small": ArchitectureSpec(
        "mobilenet_v3_small", IMAGE, (224, 224), tf.keras.applications.MobileNetV3Small,
        rescale=False,
    ),
    "pixel_mlp": ArchitectureSpec("pixel_mlp", PIXELS, PIXEL_FEATURE_SIZE),
}


def get_architecture(name: str) -> ArchitectureSpec:
    try:
        return ARCHITECTURES[name]
    except KeyError:
        raise ValueError(
            f"Unknown architecture '{name}'. Available: {', '.join(sorted(ARCHITECTURES))}"
        ) from None


# ═══════════════════════════════════════════════════════════════════════════
# Model building
# ═══════════════════════════════════════════════════════════════════════════

def build_model(
    spec: ArchitectureSpec,
    num_classes: int,
    weights: Optional[str] = "imagenet",
) -> tf.keras.Model:
    """Build a logits classifier for ``spec``.

    Parameters
    ----------
    spec : ArchitectureSpec
        Architecture to build.
    num_classes : int
        Size of the output layer (the full declared vocabulary).
    weights : str | None
        Passed to the Keras application: ``"imagenet"``, a weights file
        path, or ``None`` for random initialisation.

    Returns
    -------
    tf.keras.Model
        Uncompiled model.  Construction downloads / loads base weights and
        is therefore the step that fails on a broken backend install.
    """
    if spec.feature_mode == PIXELS:
        inputs = Input(shape=(spec.feature_length,))
        x = Dense(128, activation="relu")(inputs)
        x = Dropout(0.2)(x)
        outputs = Dense(num_classes, name="logits")(x)
        model = tf.keras.Model(inputs, outputs, name=spec.name)
        logger.info("Built %s model: %d classes, %d inputs", spec.name, num_classes, spec.feature_length)
        return model

    h, w = spec.image_size
    base = spec.application(input_shape=(h, w, 3), include_top=False, weights=weights)
    base.trainable = False

    inputs = Input(shape=(h, w, 3))
    x = Rescaling(1.0 / 127.5, offset=-1.0)(inputs) if spec.rescale else inputs
    x = base(x, training=False)
    x = GlobalAveragePooling2D()(x)
    x = Dropout(0.2)(x)
    outputs = Dense(num_classes, name="logits")(x)  # raw logits

    model = tf.keras.Model(inputs, outputs, name=spec.name)
    logger.info(
        "Built %s model: %d classes, base frozen (%d layers)",
        spec.name, num_classes, len(base.layers),
    )
    return model


# ═══════════════════════════════════════════════════════════════════════════
# Trainer
# ═══════════════════════════════════════════════════════════════════════════

class ImageClassificationTrainer:
    """A compiled Keras model bound to one ``TrainingProfile``.

    Consumes ``tf.data`` datasets of ``(features, key)`` where features are
    raw encoded image bytes (deep architectures, decoded here) or flat
    pixel vectors (``pixel_mlp``).
    """

    def __init__(self, profile: TrainingProfile, model: tf.keras.Model, spec: ArchitectureSpec, verbose: int = 1):
        self.profile = profile
        self.model = model
        self.spec = spec
        self.verbose = verbose
        self.history: Optional[tf.keras.callbacks.History] = None
        self.compile()

    @property
    def feature_mode(self) -> str:
        return self.spec.feature_mode

    def compile(self) -> None:
        self.model.compile(
            optimizer=Adam(learning_rate=self.profile.learning_rate),
            loss=tf.keras.losses.SparseCategoricalCrossentropy(from_logits=True),
            metrics=["accuracy"],
        )

    # ── Input pipeline ──────────────────────────────────────────────────

    def _decode(self, raw: tf.Tensor, *rest):
        """Decode + resize; pixel values stay in 0-255."""
        h, w = self.spec.image_size
        img = tf.io.decode_image(raw, channels=3, expand_animations=False)
        img = tf.image.resize(img, [h, w])
        return (img, *rest) if rest else img

    def batches(self, dataset: tf.data.Dataset, shuffle: bool = False, seed: int = 0) -> tf.data.Dataset:
        """Decode (image mode), optionally shuffle, batch and prefetch."""
        if shuffle:
            dataset = dataset.shuffle(buffer_size=10_000, seed=seed)
        if self.spec.feature_mode == IMAGE:
            dataset = dataset.map(self._decode, num_parallel_calls=tf.data.AUTOTUNE)
        return dataset.batch(self.profile.batch_size).prefetch(tf.data.AUTOTUNE)

    # ── Fit / score ─────────────────────────────────────────────────────

    def fit(
        self,
        train_ds: tf.data.Dataset,
        val_ds: Optional[tf.data.Dataset] = None,
        seed: int = 0,
    ) -> tf.keras.callbacks.History:
        """Train with early stopping on ``val_loss`` (``loss`` without validation)."""
        monitor = "val_loss" if val_ds is not None else "loss"
        callbacks = [
            EarlyStopping(
                monitor=monitor,
                patience=self.profile.early_stopping_patience,
                min_delta=self.profile.early_stopping_min_delta,
                restore_best_weights=True,
                verbose=self.verbose,
            ),
        ]

        logger.info(
            "═══ TRAINING %s (%s): epochs=%d, batch=%d, lr=%g ═══",
            self.profile.name, self.spec.name, self.profile.epochs,
            self.profile.batch_size, self.profile.learning_rate,
        )
        self.history = self.model.fit(
            self.batches(train_ds, shuffle=True, seed=seed),
            validation_data=self.batches(val_ds) if val_ds is not None else None,
            epochs=self.profile.epochs,
            callbacks=callbacks,
            verbose=self.verbose,
        )
        logger.info("Training complete after %d epoch(s)", len(self.history.epoch))
        return self.history

    def predict_scores(self, features: tf.data.Dataset) -> np.ndarray:
        """Softmax probabilities, shape ``(n, num_classes)``."""
        logits = self.model.predict(self.batches(features), verbose=0)
        return tf.nn.softmax(tf.convert_to_tensor(logits, dtype=tf.float32), axis=1).numpy()

    # ── Persistence ─────────────────────────────────────────────────────

    def save(self, path: Path) -> None:
        self.model.save(str(path))

    @classmethod
    def load(cls, path: Path, profile: TrainingProfile, verbose: int = 1) -> "ImageClassificationTrainer":
        model = tf.keras.models.load_model(str(path), compile=False)
        return cls(profile, model, get_architecture(profile.architecture), verbose=verbose)


# ═══════════════════════════════════════════════════════════════════════════
# Runtime setup
# ═══════════════════════════════════════════════════════════════════════════

def apply_runtime_config(runtime: RuntimeConfig) -> None:
    """Seed and thread hints; must run before TensorFlow executes any op."""
    tf.keras.utils.set_random_seed(runtime.seed)
    try:
        if runtime.intra_op_threads:
            tf.config.threading.set_intra_op_parallelism_threads(runtime.intra_op_threads)
        if runtime.inter_op_threads:
            tf.config.threading.set_inter_op_parallelism_threads(runtime.inter_op_threads)
    except RuntimeError as exc:
        logger.warning("Thread hints not applied (TensorFlow already initialised): %s", exc)


def construct_trainer(
    profile: TrainingProfile,
    num_classes: int,
    weights: Optional[str] = "imagenet",
    verbose: int = 1,
) -> ImageClassificationTrainer:
    """Build and compile the model for ``profile`` without training it."""
    spec = get_architecture(profile.architecture)
    model = build_model(spec, num_classes, weights=weights)
    return ImageClassificationTrainer(profile, model, spec, verbose=verbose)
