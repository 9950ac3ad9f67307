"""
Evaluation of a fitted pipeline on one split.

Produces:
- Micro / macro accuracy, log loss and log-loss reduction.
- Confusion matrix and per-class log loss keyed by class name.
- ``sklearn.metrics.classification_report`` per-class precision / recall / F1.
- A console report (``render_report``), ``metrics.json`` and
  ``confusion_matrix.png`` (``save_report``).
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import matplotlib
matplotlib.use("Agg")  # headless
import matplotlib.pyplot as plt
import numpy as np
from sklearn.metrics import accuracy_score, classification_report, confusion_matrix, log_loss

from .config import ClassDescriptions
from .data import SampleSet
from .errors import EvaluationFailed

logger = logging.getLogger(__name__)

OK = "ok"
NO_DATA = "no_data"
FAILED = "failed"


# ═══════════════════════════════════════════════════════════════════════════
# Result types
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class Metrics:
    """Multiclass metrics for one split, keyed by class name."""

    class_names: List[str]
    samples: int
    micro_accuracy: float
    macro_accuracy: float
    log_loss: float
    log_loss_reduction: float
    confusion_matrix: List[List[int]]
    per_class_log_loss: Dict[str, Optional[float]]
    per_class: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class EvaluationReport:
    """What the orchestrator hands back from ``evaluate`` / ``test``."""

    status: str
    split: str
    metrics: Optional[Metrics] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == OK


# ═══════════════════════════════════════════════════════════════════════════
# Core computation
# ═══════════════════════════════════════════════════════════════════════════

def compute_metrics(y_true: Sequence[int], scores: np.ndarray, class_names: Sequence[str]) -> Metrics:
    """Metrics from true keys and a ``(n, num_classes)`` probability matrix.

    Macro accuracy is the mean recall over classes present in ``y_true``.
    Log-loss reduction compares the model against always predicting the
    class frequencies of ``y_true``.
    """
    y_true = np.asarray(y_true, dtype=np.int64)
    scores = np.asarray(scores, dtype=np.float64)
    class_names = list(class_names)
    all_labels = list(range(len(class_names)))

    if y_true.size == 0:
        raise ValueError("Cannot compute metrics on an empty split")

    y_pred = np.argmax(scores, axis=1)
    eps = np.finfo(np.float64).eps
    probs = np.clip(scores, eps, 1.0)
    probs = probs / probs.sum(axis=1, keepdims=True)
    true_probs = probs[np.arange(len(y_true)), y_true]

    # ── Accuracy ────────────────────────────────────────────────────
    micro = float(accuracy_score(y_true, y_pred))
    cm = confusion_matrix(y_true, y_pred, labels=all_labels)
    support = cm.sum(axis=1)
    present = support > 0
    recalls = np.divide(np.diag(cm), support, out=np.zeros(len(all_labels)), where=present)
    macro = float(recalls[present].mean())

    # ── Log loss ────────────────────────────────────────────────────
    if len(all_labels) > 1:
        ll = float(log_loss(y_true, probs, labels=all_labels))
    else:
        ll = float(-np.log(true_probs).mean())
    priors = support[present] / support.sum()
    prior_ll = float(-(priors * np.log(priors)).sum())
    reduction = (prior_ll - ll) / prior_ll if prior_ll > 0 else 0.0

    per_class_ll: Dict[str, Optional[float]] = {}
    for idx, name in enumerate(class_names):
        mask = y_true == idx
        per_class_ll[name] = round(float(-np.log(true_probs[mask]).mean()), 4) if mask.any() else None

    # ── Per-class stats from sklearn ────────────────────────────────
    report_dict = classification_report(
        y_true, y_pred,
        target_names=class_names,
        labels=all_labels,
        output_dict=True,
        zero_division=0,
    )
    per_class = []
    for name in class_names:
        stats = report_dict.get(name, {})
        per_class.append({
            "class": name,
            "precision": round(stats.get("precision", 0), 4),
            "recall": round(stats.get("recall", 0), 4),
            "f1": round(stats.get("f1-score", 0), 4),
            "support": int(stats.get("support", 0)),
        })

    return Metrics(
        class_names=class_names,
        samples=int(y_true.size),
        micro_accuracy=round(micro, 4),
        macro_accuracy=round(macro, 4),
        log_loss=round(ll, 4),
        log_loss_reduction=round(reduction, 4),
        confusion_matrix=cm.tolist(),
        per_class_log_loss=per_class_ll,
        per_class=per_class,
    )


def evaluate_pipeline(model, samples: SampleSet) -> Metrics:
    """Score ``samples`` with a fitted pipeline and compute metrics.

    Raises
    ------
    EvaluationFailed
        Wraps any scoring or metric error.
    """
    logger.info("Transforming %s data (%d samples)…", samples.split, len(samples))
    try:
        scores = model.score(samples)
        y_true = model.encoder.transform(samples)
        logger.info("Computing metrics…")
        metrics = compute_metrics(y_true, scores, model.class_names)
    except Exception as exc:
        raise EvaluationFailed(f"Evaluation on {samples.split} failed: {exc}") from exc

    logger.info(
        "%s: micro acc=%.4f, macro acc=%.4f, log loss=%.4f",
        samples.split, metrics.micro_accuracy, metrics.macro_accuracy, metrics.log_loss,
    )
    return metrics


# ═══════════════════════════════════════════════════════════════════════════
# Rendering
# ═══════════════════════════════════════════════════════════════════════════

def render_report(metrics: Metrics, descriptions: Optional[ClassDescriptions] = None) -> str:
    """Console text: headline metrics, confusion matrix, per-class log loss."""
    descriptions = descriptions or ClassDescriptions()
    n = len(metrics.class_names)
    lines = [
        "",
        "=== Model Evaluation Metrics ===",
        f"Samples: {metrics.samples}",
        f"Macro Accuracy: {metrics.macro_accuracy:.4f}",
        f"Micro Accuracy: {metrics.micro_accuracy:.4f}",
        f"Log Loss: {metrics.log_loss:.4f}",
        f"Log Loss Reduction: {metrics.log_loss_reduction:.4f}",
        "",
        "=== Confusion Matrix ===",
        f"Confusion Matrix: {n}x{n} (rows = true, columns = predicted)",
    ]
    for name, row in zip(metrics.class_names, metrics.confusion_matrix):
        lines.append(" ".join(f"{count:4d}" for count in row) + f"   {name}")

    lines += ["", "=== Per-Class Metrics ==="]
    for stats in metrics.per_class:
        name = stats["class"]
        ll = metrics.per_class_log_loss.get(name)
        ll_text = f"{ll:.4f}" if ll is not None else "n/a"
        lines.append(
            f"Class '{descriptions.describe(name)}': Log Loss = {ll_text}, "
            f"P = {stats['precision']:.4f}, R = {stats['recall']:.4f}, "
            f"F1 = {stats['f1']:.4f}, n = {stats['support']}"
        )
    return "\n".join(lines)


def save_report(
    metrics: Metrics,
    output_dir: Path,
    prefix: str = "",
    descriptions: Optional[ClassDescriptions] = None,
) -> Path:
    """Write ``<prefix>metrics.json`` and ``<prefix>confusion_matrix.png``.

    Heat-map axes are labelled with ``descriptions`` when given, otherwise
    with the raw class names.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    path = output_dir / f"{prefix}metrics.json"
    path.write_text(json.dumps(metrics.to_dict(), indent=2, ensure_ascii=False), encoding="utf-8")
    logger.info("Metrics saved to %s", path)

    labels = descriptions.describe_all(metrics.class_names) if descriptions else list(metrics.class_names)
    title = f"{prefix.rstrip('_') or 'evaluation'}: {metrics.samples} samples"
    plot_confusion_matrix(
        np.asarray(metrics.confusion_matrix), labels,
        output_dir / f"{prefix}confusion_matrix.png", title=title,
    )
    return path


def row_shares(cm: np.ndarray) -> np.ndarray:
    """Each row divided by its total (recall per cell); empty rows stay 0."""
    cm = np.asarray(cm, dtype=float)
    totals = cm.sum(axis=1, keepdims=True)
    return np.divide(cm, totals, out=np.zeros_like(cm), where=totals > 0)


def plot_confusion_matrix(cm: np.ndarray, labels: Sequence[str], path: Path, title: str = "") -> None:
    """Render ``cm`` coloured by row share, each cell showing count and percent."""
    shares = row_shares(cm)
    size = max(4.0, 1.2 * len(labels) + 2.0)
    fig, ax = plt.subplots(figsize=(size + 2.0, size))
    image = ax.imshow(shares, cmap="Greens", vmin=0.0, vmax=1.0)
    fig.colorbar(image, ax=ax, label="Share of true class")

    positions = range(len(labels))
    ax.set_xticks(list(positions), labels=labels, rotation=30, ha="right")
    ax.set_yticks(list(positions), labels=labels)

    for (row, col), count in np.ndenumerate(np.asarray(cm)):
        ax.annotate(
            f"{count}\n{shares[row, col]:.0%}", (col, row),
            ha="center", va="center", fontsize=9,
            color="white" if shares[row, col] >= 0.6 else "black",
        )

    ax.set(xlabel="Predicted defect", ylabel="Annotated defect", title=title or "Confusion matrix")
    fig.tight_layout()
    fig.savefig(path, dpi=120)
    plt.close(fig)
    logger.info("Confusion matrix saved to %s", path)
