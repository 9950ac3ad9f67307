import json

import numpy as np
import pytest

from pcbdefect.config import ClassDescriptions
from pcbdefect.evaluate import compute_metrics, render_report, row_shares, save_report

NAMES = ["Dry_joint", "Short_circuit", "redundant"]


def one_hot(keys, n=3, p=0.98):
    scores = np.full((len(keys), n), (1 - p) / (n - 1))
    scores[np.arange(len(keys)), keys] = p
    return scores


def test_perfect_predictions():
    metrics = compute_metrics([0, 1, 2, 2], one_hot([0, 1, 2, 2]), NAMES)

    assert metrics.micro_accuracy == 1.0
    assert metrics.macro_accuracy == 1.0
    assert metrics.confusion_matrix == [[1, 0, 0], [0, 1, 0], [0, 0, 2]]
    assert metrics.log_loss < 0.05
    assert metrics.log_loss_reduction > 0.9


def test_macro_averages_recall_over_present_classes():
    # class 0: 1/1 right, class 2: 1/3 right, class 1 absent
    metrics = compute_metrics([0, 2, 2, 2], one_hot([0, 2, 0, 0]), NAMES)

    assert metrics.micro_accuracy == 0.5
    assert metrics.macro_accuracy == pytest.approx((1.0 + 1 / 3) / 2, abs=1e-4)
    assert metrics.per_class_log_loss["Short_circuit"] is None
    assert metrics.per_class_log_loss["redundant"] > metrics.per_class_log_loss["Dry_joint"]


def test_confusion_matrix_covers_full_vocabulary():
    metrics = compute_metrics([1, 1], one_hot([1, 1]), NAMES)

    assert len(metrics.confusion_matrix) == 3
    assert metrics.confusion_matrix[1] == [0, 2, 0]
    assert [c["class"] for c in metrics.per_class] == NAMES


def test_unnormalised_scores_are_accepted():
    scores = np.array([[2.0, 1.0, 1.0], [0.0, 0.0, 0.0]])
    metrics = compute_metrics([0, 1], scores, NAMES)
    assert np.isfinite(metrics.log_loss)


def test_empty_input_is_rejected():
    with pytest.raises(ValueError):
        compute_metrics([], np.zeros((0, 3)), NAMES)


def test_render_report_uses_descriptions():
    text = render_report(compute_metrics([0, 1], one_hot([0, 1]), NAMES))

    assert "Micro Accuracy: 1.0000" in text
    assert "Confusion Matrix: 3x3" in text
    assert "Class 'Dry_joint - 虚焊'" in text
    assert "Class 'redundant - 多余元件': Log Loss = n/a" in text


def test_save_report_writes_json_and_png(tmp_path):
    metrics = compute_metrics([0, 1], one_hot([0, 1]), NAMES)

    path = save_report(metrics, tmp_path / "out", prefix="test_")

    assert json.loads(path.read_text(encoding="utf-8"))["samples"] == 2
    assert (tmp_path / "out" / "test_confusion_matrix.png").stat().st_size > 0


def test_save_report_with_descriptions(tmp_path):
    metrics = compute_metrics([0, 1, 1], one_hot([0, 1, 0]), NAMES)

    save_report(metrics, tmp_path, descriptions=ClassDescriptions())

    assert (tmp_path / "confusion_matrix.png").stat().st_size > 0


def test_row_shares_normalise_per_true_class():
    shares = row_shares(np.array([[3, 1, 0], [0, 0, 0], [2, 0, 2]]))

    np.testing.assert_allclose(shares, [[0.75, 0.25, 0.0], [0.0, 0.0, 0.0], [0.5, 0.0, 0.5]])
