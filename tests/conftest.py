"""
Shared fixtures: a tiny YOLO dataset on disk and fake trainers.

Layout built by ``yolo_dataset``::

    <tmp>/pcb/
    ├── data.yaml
    ├── train/images/{a,b,c}.png   train/labels/{a,b}.txt   (c is unlabeled)
    ├── valid/images/d.png         valid/labels/d.txt
    └── test/                      (absent unless a test adds it)
"""

from pathlib import Path

import numpy as np
import pytest
from PIL import Image

from pcbdefect.config import IMAGE, HardwareProfile, TrainingProfile, load_dataset_config

CLASS_NAMES = ["Dry_joint", "Short_circuit", "redundant"]

DATA_YAML = """\
train: ../train/images
val: ../valid/images
test: ../test/images
nc: 3
names: ['Dry_joint', 'Short_circuit', 'redundant']
"""

X86 = HardwareProfile(machine="x86_64", is_arm=False, cpu_count=1)


def write_image(path: Path, color=(200, 30, 30)) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    Image.new("RGB", (8, 8), color).save(path)
    return path


def write_labels(path: Path, *lines: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("".join(f"{line}\n" for line in lines), encoding="utf-8")
    return path


def add_split(root: Path, split_dir: str, files: dict) -> None:
    """``files`` maps image file name → label lines (None = no label file)."""
    for name, lines in files.items():
        write_image(root / split_dir / "images" / name)
        if lines is not None:
            write_labels(root / split_dir / "labels" / f"{Path(name).stem}.txt", *lines)


@pytest.fixture
def yolo_root(tmp_path):
    root = tmp_path / "pcb"
    add_split(root, "train", {
        "a.png": ["0 0.5 0.5 0.1 0.1", "2 0.3 0.3 0.1 0.1"],
        "b.png": ["1 0.5 0.5 0.2 0.2"],
        "c.png": None,
    })
    add_split(root, "valid", {"d.png": ["1 0.5 0.5 0.2 0.2"]})
    (root / "data.yaml").write_text(DATA_YAML, encoding="utf-8")
    return root


@pytest.fixture
def dataset_config(yolo_root):
    return load_dataset_config(yolo_root / "data.yaml")


# ── Fake backend ────────────────────────────────────────────────────────

class FakeTrainer:
    """Stands in for ``ImageClassificationTrainer`` without building a network.

    Scores every input as ``winner`` with probability ``confidence``.
    """

    feature_mode = IMAGE

    def __init__(self, profile, num_classes, winner=0, confidence=0.9, fit_error=None):
        self.profile = profile
        self.num_classes = num_classes
        self.winner = winner
        self.confidence = confidence
        self.fit_error = fit_error
        self.fit_calls = []

    def fit(self, train_ds, val_ds=None, seed=0):
        if self.fit_error is not None:
            raise self.fit_error
        self.fit_calls.append((int(train_ds.cardinality()), val_ds is not None, seed))

    def predict_scores(self, features):
        n = int(features.cardinality())
        rest = (1.0 - self.confidence) / max(self.num_classes - 1, 1)
        scores = np.full((n, self.num_classes), rest, dtype=np.float32)
        scores[:, self.winner] = self.confidence
        return scores

    def save(self, path):
        Path(path).write_bytes(b"not a keras archive")


class RecordingFactory:
    """Trainer factory that fails for the profile names in ``fail``."""

    def __init__(self, fail=(), **trainer_kwargs):
        self.fail = set(fail)
        self.trainer_kwargs = trainer_kwargs
        self.calls = []
        self.trainers = []

    def __call__(self, profile, num_classes):
        self.calls.append(profile.name)
        if profile.name in self.fail:
            raise RuntimeError(f"cannot build {profile.architecture}")
        trainer = FakeTrainer(profile, num_classes, **self.trainer_kwargs)
        self.trainers.append(trainer)
        return trainer


@pytest.fixture
def ladder():
    return (
        TrainingProfile(name="standard", architecture="resnet_v2_101"),
        TrainingProfile(name="compatibility", architecture="mobilenet_v2", epochs=1, batch_size=5),
        TrainingProfile(name="simplified", architecture="pixel_mlp", epochs=5, batch_size=2, learning_rate=1e-4),
    )
