"""
Single-image prediction.

Pipeline:
    1. Wrap the path in a one-element ``SampleSet``.
    2. Score it with the fitted pipeline → softmax probabilities.
    3. Arg-max → class name via the label decoder.
    4. Confidence = ``max(score) * 100``, rounded to 2 decimals.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence, Tuple

import numpy as np

from .config import UNKNOWN_DESCRIPTION, ClassDescriptions
from .data import Sample, SampleSet
from .errors import PcbDefectError, PredictionFailed

logger = logging.getLogger(__name__)

UNKNOWN_LABEL = "Unknown"
ERROR_LABEL = "Error"
ERROR_DESCRIPTION = "Error - 预测错误"


@dataclass(frozen=True)
class PredictionResult:
    """Prediction for one input sample.

    ``label`` is a class name, ``UNKNOWN_LABEL`` when the model produced
    none, or ``ERROR_LABEL`` when prediction failed (see ``error``).
    """

    sample: Sample
    label: str
    confidence: Optional[float] = None
    scores: Tuple[float, ...] = ()
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.label != UNKNOWN_LABEL

    @classmethod
    def failed(cls, image_path: str, error: str) -> "PredictionResult":
        return cls(sample=Sample(image_path=str(image_path), label=""), label=ERROR_LABEL, error=error)

    def format(self, descriptions: Optional[ClassDescriptions] = None) -> str:
        """``"Short_circuit - 短路 (confidence: 97.25%)"``."""
        if self.error is not None:
            return ERROR_DESCRIPTION
        if self.label == UNKNOWN_LABEL:
            return UNKNOWN_DESCRIPTION
        text = (descriptions or ClassDescriptions()).describe(self.label)
        if self.confidence is not None:
            text += f" (confidence: {self.confidence:.2f}%)"
        return text


def confidence_from_scores(scores: Sequence[float]) -> Optional[float]:
    """``max(scores) * 100`` rounded to 2 decimals; None for no scores."""
    scores = np.asarray(scores, dtype=np.float64)
    if scores.size == 0:
        return None
    return round(float(scores.max()) * 100.0, 2)


def predict_image(model, image_path: str | Path) -> PredictionResult:
    """Run ``model`` on one image file.

    Raises
    ------
    PredictionFailed
        Missing file, schema mismatch, or any backend error.
    """
    image_path = str(image_path)
    if not Path(image_path).is_file():
        raise PredictionFailed(f"Image file not found: {image_path}")

    samples = SampleSet.single(image_path)
    try:
        scores = model.score(samples)
    except PcbDefectError:
        raise
    except Exception as exc:
        raise PredictionFailed(f"Prediction failed for {image_path}: {exc}") from exc

    sample = samples[0]
    row = np.asarray(scores[0] if len(scores) else [], dtype=np.float64)
    if row.size == 0:
        return PredictionResult(sample=sample, label=UNKNOWN_LABEL)

    label = model.decoder.decode(int(np.argmax(row))) or UNKNOWN_LABEL
    result = PredictionResult(
        sample=sample,
        label=label,
        confidence=confidence_from_scores(row),
        scores=tuple(float(s) for s in row),
    )
    logger.info("Predicted %s for %s (%.2f%%)", result.label, image_path, result.confidence)
    return result
