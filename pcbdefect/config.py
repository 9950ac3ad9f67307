"""
Dataset configuration: path constants, run settings and ``data.yaml`` parsing.

Importing this module must not pull in TensorFlow; the CLI reads the
dataset description even on hosts where the backend is broken.

Directory conventions
---------------------
::

    <cwd>/
    ├── PCB_detect_6_700_yolo/            ← Dataset root (YOLO layout)
    │   ├── data.yaml                     ← train / val / test / nc / names
    │   ├── train/
    │   │   ├── images/                   ← *.jpg, *.jpeg, *.png
    │   │   └── labels/                   ← <stem>.txt, one box per line
    │   ├── valid/…
    │   └── test/…
    │
    └── Output/
        └── pcb_detection_model/          ← Saved pipeline bundle
            ├── model.keras               ← Fitted Keras classifier
            ├── schema.json               ← Input columns, vocabulary, profile
            ├── classes.txt               ← Class list for this model
            ├── metrics.json              ← Last evaluation results
            └── confusion_matrix.png
"""

from __future__ import annotations

import logging
import os
import platform
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Iterable, Mapping, Optional, Sequence, Tuple

import yaml

from .errors import ConfigInvalid

logger = logging.getLogger(__name__)

# ── Paths ───────────────────────────────────────────────────────────────────

DATASET_ROOT: Path = Path("PCB_detect_6_700_yolo")
OUTPUT_DIR: Path = Path("Output")
MODEL_NAME: str = "pcb_detection_model"

# Where to look for data.yaml when no --config is given: the working
# directory first, then up from a nested build / virtualenv directory.
CONFIG_CANDIDATES: Tuple[Path, ...] = (
    DATASET_ROOT / "data.yaml",
    Path("..", "..", "..") / DATASET_ROOT / "data.yaml",
    Path("..", "..", "..", "..") / DATASET_ROOT / "data.yaml",
)

IMAGE_EXTENSIONS: Tuple[str, ...] = (".jpg", ".jpeg", ".png")

REQUIRED_KEYS: Tuple[str, ...] = ("train", "val", "test", "nc", "names")

# Feature modes: encoded image bytes (deep architectures) or flat pixels.
IMAGE = "image"
PIXELS = "pixels"
PIXEL_FEATURE_SIZE: Tuple[int, int] = (32, 32)

# The six defect types of the reference PCB dataset.
DEFAULT_DEFECT_DESCRIPTIONS: Mapping[str, str] = MappingProxyType({
    "Dry_joint": "虚焊",
    "Incorrect_installation": "安装错误",
    "Short_circuit": "短路",
    "low_solder": "少锡",
    "oppostie_direction": "方向错误",
    "redundant": "多余元件",
})


# ── Dataset ─────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class DatasetConfig:
    """Parsed ``data.yaml``: split locations and the class vocabulary.

    Attributes
    ----------
    train_path, val_path, test_path : str
        Image directories per split.  Relative paths are resolved under
        ``root`` by the scanner.
    number_of_classes : int
        ``nc`` from the YAML file.
    class_names : tuple[str, ...]
        ``names`` from the YAML file; position is the YOLO class id.
    root : Path
        Dataset root used to resolve relative split paths.

    Raises
    ------
    ConfigInvalid
        If ``class_names`` does not have exactly ``number_of_classes`` entries.
    """

    train_path: str
    val_path: str
    test_path: str
    number_of_classes: int
    class_names: Tuple[str, ...]
    root: Path = DATASET_ROOT

    def __post_init__(self):
        object.__setattr__(self, "class_names", tuple(self.class_names))
        object.__setattr__(self, "root", Path(self.root))
        if len(self.class_names) != self.number_of_classes:
            raise ConfigInvalid(
                f"nc={self.number_of_classes} but {len(self.class_names)} "
                f"class names were given: {list(self.class_names)}"
            )

    def split_path(self, split: str) -> str:
        """Return the configured image path for ``train`` / ``val`` / ``test``."""
        paths = {"train": self.train_path, "val": self.val_path, "test": self.test_path}
        try:
            return paths[split]
        except KeyError:
            raise ValueError(f"Unknown split '{split}', expected one of {sorted(paths)}") from None

    def to_dict(self) -> dict:
        return {
            "train": self.train_path,
            "val": self.val_path,
            "test": self.test_path,
            "nc": self.number_of_classes,
            "names": list(self.class_names),
            "path": str(self.root),
        }


# ── Training profile ────────────────────────────────────────────────────────

@dataclass(frozen=True)
class TrainingProfile:
    """Architecture + hyperparameters for one training run.

    Chosen once by the backend initializer and never changed afterwards.
    ``architecture`` is a key of ``pcbdefect.train.ARCHITECTURES``.
    """

    name: str
    architecture: str
    epochs: int = 200
    batch_size: int = 10
    learning_rate: float = 1e-3
    early_stopping_patience: int = 20
    early_stopping_min_delta: float = 0.01

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "architecture": self.architecture,
            "epochs": self.epochs,
            "batch_size": self.batch_size,
            "learning_rate": self.learning_rate,
            "early_stopping_patience": self.early_stopping_patience,
            "early_stopping_min_delta": self.early_stopping_min_delta,
        }

    @classmethod
    def from_dict(cls, data: Mapping) -> "TrainingProfile":
        return cls(**{k: data[k] for k in cls.__dataclass_fields__ if k in data})


# ── Hardware / runtime ──────────────────────────────────────────────────────

ARM_MACHINES = frozenset({"arm64", "aarch64", "armv7l", "armv8l", "arm"})


@dataclass(frozen=True)
class HardwareProfile:
    """What the process is running on; detected once per run."""

    machine: str
    is_arm: bool
    cpu_count: int

    @classmethod
    def detect(cls) -> "HardwareProfile":
        machine = platform.machine() or "unknown"
        profile = cls(
            machine=machine,
            is_arm=machine.lower() in ARM_MACHINES,
            cpu_count=os.cpu_count() or 1,
        )
        logger.info(
            "Hardware: machine=%s, arm=%s, cpus=%d",
            profile.machine, profile.is_arm, profile.cpu_count,
        )
        return profile


@dataclass(frozen=True)
class RuntimeConfig:
    """Process-level settings handed to the orchestrator at construction.

    Thread counts of 0 leave the TensorFlow defaults in place.
    """

    intra_op_threads: int = 0
    inter_op_threads: int = 0
    seed: int = 0
    output_dir: Path = OUTPUT_DIR
    model_name: str = MODEL_NAME
    verbose: int = 1

    @property
    def model_dir(self) -> Path:
        return Path(self.output_dir) / self.model_name

    def to_dict(self) -> dict:
        return {
            "intra_op_threads": self.intra_op_threads,
            "inter_op_threads": self.inter_op_threads,
            "seed": self.seed,
            "output_dir": str(self.output_dir),
            "model_name": self.model_name,
            "verbose": self.verbose,
        }


# ── Class descriptions ──────────────────────────────────────────────────────

UNKNOWN_DESCRIPTION = "Unknown - 未知"


@dataclass(frozen=True)
class ClassDescriptions:
    """Read-only class-name → human description lookup."""

    mapping: Mapping[str, str] = field(default_factory=lambda: DEFAULT_DEFECT_DESCRIPTIONS)

    def __post_init__(self):
        object.__setattr__(self, "mapping", MappingProxyType(dict(self.mapping)))

    def describe(self, name: Optional[str]) -> str:
        """``"Dry_joint - 虚焊"``; unknown names keep the English name."""
        if not name:
            return UNKNOWN_DESCRIPTION
        description = self.mapping.get(name)
        if description is None:
            return f"{name} - 未知类型"
        return f"{name} - {description}"

    def describe_all(self, names: Iterable[str]) -> list[str]:
        return [self.describe(n) for n in names]


# ── YAML loading ────────────────────────────────────────────────────────────

def find_config_file(candidates: Sequence[Path] = CONFIG_CANDIDATES) -> Optional[Path]:
    """Return the absolute path of the first existing candidate, or None."""
    for candidate in candidates:
        if Path(candidate).is_file():
            return Path(candidate).resolve()
    return None


def load_dataset_config(path: Path | str, root: Path | str | None = None) -> DatasetConfig:
    """Parse a YOLO ``data.yaml`` into a ``DatasetConfig``.

    Parameters
    ----------
    path : Path | str
        The YAML file.
    root : Path | str | None
        Dataset root override.  Defaults to the ``path`` key of the YAML
        document if present, else the directory holding the YAML file.

    Raises
    ------
    ConfigInvalid
        File missing, not valid YAML, missing keys or wrong value types.
    """
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigInvalid(f"Cannot read config file {path}: {exc}") from exc

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigInvalid(f"Config file {path} is not valid YAML: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigInvalid(f"Config file {path} must contain a mapping, got {type(data).__name__}")

    missing = [k for k in REQUIRED_KEYS if k not in data]
    if missing:
        raise ConfigInvalid(f"Config file {path} is missing keys: {missing}")

    names = data["names"]
    # YOLO also allows ``names: {0: a, 1: b}``
    if isinstance(names, dict):
        try:
            names = [names[i] for i in sorted(names, key=int)]
        except (TypeError, ValueError) as exc:
            raise ConfigInvalid(f"'names' mapping keys must be class ids: {exc}") from exc
    if not isinstance(names, list) or not all(isinstance(n, str) for n in names):
        raise ConfigInvalid("'names' must be a list of strings")

    try:
        nc = int(data["nc"])
    except (TypeError, ValueError):
        raise ConfigInvalid(f"'nc' must be an integer, got {data['nc']!r}") from None

    for key in ("train", "val", "test"):
        if data[key] is not None and not isinstance(data[key], str):
            raise ConfigInvalid(f"'{key}' must be a path string, got {data[key]!r}")

    if root is None:
        root = data.get("path") or path.parent

    config = DatasetConfig(
        train_path=data["train"] or "",
        val_path=data["val"] or "",
        test_path=data["test"] or "",
        number_of_classes=nc,
        class_names=tuple(names),
        root=Path(root),
    )
    logger.info(
        "Loaded dataset config %s: %d classes %s",
        path, config.number_of_classes, list(config.class_names),
    )
    return config
