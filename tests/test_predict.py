import numpy as np
import pytest

from pcbdefect.config import TrainingProfile
from pcbdefect.errors import PredictionFailed
from pcbdefect.pipeline import FittedPipeline, LabelDecoder, LabelEncoder, RawImageLoader
from pcbdefect.predict import (
    ERROR_DESCRIPTION,
    ERROR_LABEL,
    UNKNOWN_LABEL,
    PredictionResult,
    confidence_from_scores,
    predict_image,
)

from conftest import CLASS_NAMES, FakeTrainer, write_image

PROFILE = TrainingProfile(name="standard", architecture="resnet_v2_101")


def fitted(trainer):
    return FittedPipeline(
        encoder=LabelEncoder(CLASS_NAMES),
        loader=RawImageLoader(),
        trainer=trainer,
        decoder=LabelDecoder(CLASS_NAMES),
        profile=PROFILE,
    )


def test_confidence_is_percent_of_max_score():
    assert confidence_from_scores([0.1, 0.9725, 0.0275]) == 97.25
    assert confidence_from_scores([1 / 3, 1 / 3, 1 / 3]) == 33.33
    assert confidence_from_scores([]) is None


def test_predicts_the_highest_scoring_class(tmp_path):
    image = write_image(tmp_path / "board.jpg")
    model = fitted(FakeTrainer(PROFILE, 3, winner=1, confidence=0.8))

    result = predict_image(model, image)

    assert result.label == "Short_circuit"
    assert result.confidence == 80.0
    assert result.ok
    assert result.format() == "Short_circuit - 短路 (confidence: 80.00%)"


def test_missing_image_fails(tmp_path):
    model = fitted(FakeTrainer(PROFILE, 3))
    with pytest.raises(PredictionFailed, match="not found"):
        predict_image(model, tmp_path / "missing.jpg")


def test_backend_error_is_wrapped(tmp_path):
    image = write_image(tmp_path / "board.jpg")

    class ExplodingTrainer(FakeTrainer):
        def predict_scores(self, features):
            raise RuntimeError("boom")

    with pytest.raises(PredictionFailed, match="boom"):
        predict_image(fitted(ExplodingTrainer(PROFILE, 3)), image)


def test_schema_mismatch_is_rejected(tmp_path):
    image = write_image(tmp_path / "board.jpg")
    model = fitted(FakeTrainer(PROFILE, 3))
    model.input_schema = {"ImagePath": "str", "Label": "str"}

    with pytest.raises(PredictionFailed, match="expects input columns"):
        predict_image(model, image)


def test_empty_scores_are_unknown(tmp_path):
    image = write_image(tmp_path / "board.jpg")
    trainer = FakeTrainer(PROFILE, 3)
    trainer.predict_scores = lambda features: np.zeros((1, 0), dtype=np.float32)

    result = predict_image(fitted(trainer), image)

    assert result.label == UNKNOWN_LABEL
    assert result.confidence is None
    assert not result.ok
    assert result.format() == "Unknown - 未知"


def test_failed_result_formats_as_error():
    result = PredictionResult.failed("x.jpg", "boom")

    assert result.label == ERROR_LABEL
    assert result.format() == ERROR_DESCRIPTION
    assert not result.ok
