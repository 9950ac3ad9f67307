"""
Backend initialisation: the profile fallback ladder.

Before any data is fitted, the initializer tries to *construct* (not train)
a trainer for each candidate profile, in declared order:

1. ``standard``       – platform-preferred architecture, full schedule.
2. ``compatibility``  – low-memory architecture, smaller batch, one epoch.
3. ``simplified``     – ``pixel_mlp`` on flat pixel features, smallest
   batch, reduced learning rate.

The first profile that constructs is selected and the ladder stops there.
Each attempt is recorded as a ``ConstructionAttempt``; when every candidate
fails, ``BackendUnavailable`` carries all of them plus remediation hints.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional, Protocol, Sequence, Tuple

from .config import HardwareProfile, RuntimeConfig, TrainingProfile
from .errors import BackendUnavailable

logger = logging.getLogger(__name__)

STANDARD = "standard"
COMPATIBILITY = "compatibility"
SIMPLIFIED = "simplified"


# ═══════════════════════════════════════════════════════════════════════════
# Candidate profiles
# ═══════════════════════════════════════════════════════════════════════════

def default_candidates(hardware: HardwareProfile) -> Tuple[TrainingProfile, ...]:
    """The fallback ladder for ``hardware``.

    On ARM hosts MobileNetV2 is the standard architecture and MobileNetV3
    Small the compatibility one; elsewhere ResNetV2-101 and MobileNetV2.
    """
    if hardware.is_arm:
        standard_arch, compat_arch = "mobilenet_v2", "mobilenet_v3_small"
    else:
        standard_arch, compat_arch = "resnet_v2_101", "mobilenet_v2"

    return (
        TrainingProfile(
            name=STANDARD,
            architecture=standard_arch,
            epochs=200,
            batch_size=10,
            learning_rate=1e-3,
            early_stopping_patience=20,
            early_stopping_min_delta=0.01,
        ),
        TrainingProfile(
            name=COMPATIBILITY,
            architecture=compat_arch,
            epochs=1,
            batch_size=5,
            learning_rate=1e-3,
            early_stopping_patience=1,
            early_stopping_min_delta=0.01,
        ),
        TrainingProfile(
            name=SIMPLIFIED,
            architecture="pixel_mlp",
            epochs=5,
            batch_size=2,
            learning_rate=1e-4,
            early_stopping_patience=2,
            early_stopping_min_delta=0.001,
        ),
    )


# ═══════════════════════════════════════════════════════════════════════════
# Trainer factory
# ═══════════════════════════════════════════════════════════════════════════

class TrainerFactory(Protocol):
    """Builds an untrained trainer for ``profile``; raises if it cannot."""

    def __call__(self, profile: TrainingProfile, num_classes: int) -> Any: ...


class KerasTrainerFactory:
    """Default factory: builds and compiles a Keras model for a profile.

    TensorFlow is imported on first use so that a missing or broken install
    shows up as a failed construction attempt.  Runtime hints (seed, thread
    counts) are applied once, before the first model is built.
    """

    def __init__(self, runtime: RuntimeConfig = RuntimeConfig(), weights: Optional[str] = "imagenet"):
        self.runtime = runtime
        self.weights = weights
        self._configured = False

    def __call__(self, profile: TrainingProfile, num_classes: int) -> Any:
        from . import train

        if not self._configured:
            train.apply_runtime_config(self.runtime)
            self._configured = True
        return train.construct_trainer(
            profile, num_classes, weights=self.weights, verbose=self.runtime.verbose,
        )


# ═══════════════════════════════════════════════════════════════════════════
# Attempts and outcome
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ConstructionAttempt:
    """Outcome of constructing one candidate: a trainer or a reason."""

    profile: TrainingProfile
    trainer: Any = None
    reason: Optional[str] = None
    error_type: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.reason is None

    def to_dict(self) -> dict:
        return {
            "profile": self.profile.name,
            "architecture": self.profile.architecture,
            "ok": self.ok,
            "reason": self.reason,
            "error_type": self.error_type,
        }


@dataclass(frozen=True)
class InitializedBackend:
    """The selected profile, its constructed trainer, and the attempt log."""

    profile: TrainingProfile
    trainer: Any
    attempts: Tuple[ConstructionAttempt, ...] = field(default_factory=tuple)


# ═══════════════════════════════════════════════════════════════════════════
# Remediation hints
# ═══════════════════════════════════════════════════════════════════════════

_HINT_RULES: Tuple[Tuple[Tuple[str, ...], str], ...] = (
    (
        ("importerror", "modulenotfounderror", "no module named", "dll load failed"),
        "Install TensorFlow for this platform (pip install tensorflow); "
        "ARM hosts may need a platform-specific wheel.",
    ),
    (
        ("urlerror", "httperror", "connectionerror", "download", "imagenet", "certificate"),
        "Pretrained ImageNet weights could not be fetched; check network access "
        "or place the weight files under ~/.keras/models.",
    ),
    (
        ("memoryerror", "resourceexhausted", "out of memory", "oom"),
        "Reduce the batch size or use a smaller architecture profile.",
    ),
    (
        ("decode", "image file format", "invalidargumenterror"),
        "An image could not be decoded; check the dataset for corrupt or non-image files.",
    ),
    (
        ("filenotfounderror", "no such file", "file not found"),
        "A referenced file is missing; re-check the dataset paths in data.yaml.",
    ),
)

_DEFAULT_HINT = "Check that TensorFlow imports cleanly: python -c \"import tensorflow\"."


def remediation_hints(failures: Iterable[Any]) -> List[str]:
    """Map exceptions (or ``ConstructionAttempt``\\ s) to user guidance."""
    hints: List[str] = []
    for failure in failures:
        if isinstance(failure, ConstructionAttempt):
            text = f"{failure.error_type} {failure.reason}"
        else:
            text = f"{type(failure).__name__} {failure}"
        text = text.lower()
        matched = [hint for keys, hint in _HINT_RULES if any(k in text for k in keys)]
        for hint in matched or [_DEFAULT_HINT]:
            if hint not in hints:
                hints.append(hint)
    return hints


# ═══════════════════════════════════════════════════════════════════════════
# Initializer
# ═══════════════════════════════════════════════════════════════════════════

class BackendInitializer:
    """Walk the fallback ladder until one profile constructs.

    Parameters
    ----------
    num_classes : int
        Output size every candidate is built for.
    factory : TrainerFactory, optional
        ``factory(profile, num_classes) -> trainer``; raises on failure.
        Defaults to ``KerasTrainerFactory()``.
    candidates : sequence of TrainingProfile, optional
        Overrides ``default_candidates(hardware)``.
    """

    def __init__(
        self,
        num_classes: int,
        factory: Optional[TrainerFactory] = None,
        candidates: Optional[Sequence[TrainingProfile]] = None,
    ):
        self.num_classes = num_classes
        self.factory = factory or KerasTrainerFactory()
        self.candidates = tuple(candidates) if candidates is not None else None

    def candidates_for(self, hardware: HardwareProfile) -> Tuple[TrainingProfile, ...]:
        if self.candidates is not None:
            return self.candidates
        return default_candidates(hardware)

    def try_construct(self, profile: TrainingProfile) -> ConstructionAttempt:
        """Construct a trainer for ``profile``; never raises."""
        logger.info("Trying %s profile (%s)…", profile.name, profile.architecture)
        try:
            trainer = self.factory(profile, self.num_classes)
        except Exception as exc:
            logger.warning(
                "Profile %s (%s) failed to initialise: %s: %s",
                profile.name, profile.architecture, type(exc).__name__, exc,
            )
            return ConstructionAttempt(
                profile=profile, reason=str(exc) or type(exc).__name__, error_type=type(exc).__name__,
            )
        return ConstructionAttempt(profile=profile, trainer=trainer)

    def initialize(self, hardware: Optional[HardwareProfile] = None) -> InitializedBackend:
        """Select the first constructible profile.

        Raises
        ------
        BackendUnavailable
            If every candidate failed; carries one attempt per candidate.
        """
        hardware = hardware or HardwareProfile.detect()
        attempts: List[ConstructionAttempt] = []

        for profile in self.candidates_for(hardware):
            attempt = self.try_construct(profile)
            attempts.append(attempt)
            if attempt.ok:
                logger.info(
                    "Training backend initialised with %s profile (%s) after %d attempt(s)",
                    profile.name, profile.architecture, len(attempts),
                )
                return InitializedBackend(profile=profile, trainer=attempt.trainer, attempts=tuple(attempts))

        raise BackendUnavailable(attempts, remediation_hints(attempts))
