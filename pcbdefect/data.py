"""
Sample scanning from a YOLO-formatted split directory.

Each image is paired with ``<labels dir>/<stem>.txt``.  Every annotation
line in that file becomes one ``(image_path, class_name)`` sample, so an
image with three boxes appears three times, once per box.  The detection
dataset is thereby reduced to single-label multiclass classification.

Public API
----------
Sample       – One (image path, class name) pair.
SampleSet    – Ordered samples of one split plus scan statistics.
ScanOptions  – images → labels directory mapping.
scan_split   – One split directory → ``SampleSet``.
load_splits  – train / val / test in one call (convenience wrapper).

Usage::

    from pcbdefect.config import load_dataset_config
    from pcbdefect.data   import load_splits

    config = load_dataset_config("PCB_detect_6_700_yolo/data.yaml")
    splits = load_splits(config)
    print(len(splits["train"]), splits["train"].label_counts())
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from .config import IMAGE_EXTENSIONS, DatasetConfig
from .errors import DatasetDirectoryMissing, LabelLineMalformed

logger = logging.getLogger(__name__)

SPLITS: Tuple[str, ...] = ("train", "val", "test")

SPLIT_DISPLAY_NAMES = {"train": "train", "val": "validation", "test": "test"}


# ═══════════════════════════════════════════════════════════════════════════
# Value types
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Sample:
    """One training / evaluation unit."""

    image_path: str
    label: str


@dataclass(frozen=True)
class SampleSet:
    """All samples of one split, in scan order.

    Attributes
    ----------
    split : str
        ``"train"``, ``"val"``, ``"test"`` or a free-form name.
    samples : tuple[Sample, ...]
        Not deduplicated: one entry per accepted annotation line.
    images_found : int
        Image files with an accepted extension.
    unlabeled_images : int
        Images without a label file (given the default label).
    rejected_lines : int
        Annotation lines skipped as malformed or out of range.
    """

    split: str
    samples: Tuple[Sample, ...] = ()
    images_found: int = 0
    unlabeled_images: int = 0
    rejected_lines: int = 0

    def __len__(self) -> int:
        return len(self.samples)

    def __iter__(self) -> Iterator[Sample]:
        return iter(self.samples)

    def __getitem__(self, index: int) -> Sample:
        return self.samples[index]

    @property
    def is_empty(self) -> bool:
        return not self.samples

    @property
    def image_paths(self) -> List[str]:
        return [s.image_path for s in self.samples]

    @property
    def labels(self) -> List[str]:
        return [s.label for s in self.samples]

    def label_counts(self) -> Dict[str, int]:
        return dict(Counter(self.labels))

    @classmethod
    def single(cls, image_path: str, label: str = "", split: str = "predict") -> "SampleSet":
        """Wrap one path for prediction."""
        return cls(split=split, samples=(Sample(image_path=str(image_path), label=label),), images_found=1)


@dataclass(frozen=True)
class ScanOptions:
    """How to find the label directory for an image directory.

    The last path segment equal to ``images_dir_name`` is swapped for
    ``labels_dir_name``.  Without such a segment the labels are expected
    next to the images.
    """

    images_dir_name: str = "images"
    labels_dir_name: str = "labels"
    extensions: Tuple[str, ...] = IMAGE_EXTENSIONS


# ═══════════════════════════════════════════════════════════════════════════
# Path helpers
# ═══════════════════════════════════════════════════════════════════════════

def resolve_image_dir(image_root: str | Path, dataset_root: Path) -> Path:
    """Absolute image directory for a configured split path.

    Relative paths lose their leading ``.``, ``/`` and ``\\`` characters and
    are joined under ``dataset_root``, so ``../train/images`` resolves to
    ``<dataset_root>/train/images``.
    """
    raw = str(image_root)
    if Path(raw).is_absolute():
        return Path(raw)
    return (Path(dataset_root) / raw.lstrip("./\\")).resolve()


def labels_dir_for(image_dir: Path, options: ScanOptions = ScanOptions()) -> Path:
    """Map ``…/images/…`` to ``…/labels/…`` (last matching segment only)."""
    parts = list(image_dir.parts)
    for i in range(len(parts) - 1, -1, -1):
        if parts[i] == options.images_dir_name:
            parts[i] = options.labels_dir_name
            return Path(*parts)
    logger.warning(
        "No '%s' segment in %s, looking for label files next to the images",
        options.images_dir_name, image_dir,
    )
    return image_dir


def list_images(image_dir: Path, extensions: Sequence[str] = IMAGE_EXTENSIONS) -> List[Path]:
    """Image files directly inside ``image_dir``, sorted by name."""
    allowed = {e.lower() for e in extensions}
    return sorted(
        p for p in image_dir.iterdir()
        if p.is_file() and p.suffix.lower() in allowed
    )


# ═══════════════════════════════════════════════════════════════════════════
# Label parsing
# ═══════════════════════════════════════════════════════════════════════════

def parse_label_line(line: str, class_names: Sequence[str], label_file: str = "") -> str:
    """Return the class name for one YOLO line ``<id> <xc> <yc> <w> <h>``.

    Only the leading class index is read.

    Raises
    ------
    LabelLineMalformed
        If the first token is not an integer or lies outside ``class_names``.
    """
    tokens = line.split()
    if not tokens:
        raise LabelLineMalformed(label_file, line, "blank line")
    try:
        class_index = int(tokens[0])
    except ValueError:
        raise LabelLineMalformed(label_file, line, "class index is not an integer") from None
    if not 0 <= class_index < len(class_names):
        raise LabelLineMalformed(
            label_file, line, f"class index {class_index} outside [0, {len(class_names)})",
        )
    return class_names[class_index]


def read_label_file(label_file: Path, class_names: Sequence[str]) -> Tuple[List[str], int]:
    """Parse every non-blank line; return ``(labels, rejected_count)``."""
    labels: List[str] = []
    rejected = 0
    for line in label_file.read_text(encoding="utf-8", errors="replace").splitlines():
        if not line.strip():
            continue
        try:
            labels.append(parse_label_line(line, class_names, str(label_file)))
        except LabelLineMalformed as exc:
            rejected += 1
            logger.debug("Skipping annotation line: %s", exc)
    return labels, rejected


# ═══════════════════════════════════════════════════════════════════════════
# Single-split scanner
# ═══════════════════════════════════════════════════════════════════════════

def _existing_dir(image_dir: Path, split: str) -> Path:
    if not image_dir.is_dir():
        raise DatasetDirectoryMissing(split, str(image_dir))
    return image_dir


def scan_split(
    image_root: str | Path,
    config: DatasetConfig,
    split: str = "train",
    options: ScanOptions = ScanOptions(),
) -> SampleSet:
    """Scan one split directory into a ``SampleSet``.

    The pipeline:
        1. Resolve the image directory (relative → under ``config.root``).
        2. Derive the label directory (``images`` → ``labels``).
        3. For each image, emit one sample per valid annotation line, or one
           sample labelled ``class_names[0]`` when no label file exists.

    Never raises for dataset problems: a missing directory yields an empty
    set and a warning; malformed lines are skipped.
    """
    display = SPLIT_DISPLAY_NAMES.get(split, split)
    class_names = config.class_names

    if not str(image_root).strip():
        logger.warning("No %s images directory configured", display)
        return SampleSet(split=split)

    image_dir = resolve_image_dir(image_root, config.root)

    try:
        _existing_dir(image_dir, display)
    except DatasetDirectoryMissing as exc:
        logger.warning("%s", exc)
        return SampleSet(split=split)

    label_dir = labels_dir_for(image_dir, options)
    images = list_images(image_dir, options.extensions)

    samples: List[Sample] = []
    unlabeled = 0
    rejected = 0

    for image_file in images:
        label_file = label_dir / f"{image_file.stem}.txt"
        if label_file.is_file():
            labels, bad = read_label_file(label_file, class_names)
            rejected += bad
            samples.extend(Sample(image_path=str(image_file), label=lbl) for lbl in labels)
        elif class_names:
            unlabeled += 1
            samples.append(Sample(image_path=str(image_file), label=class_names[0]))

    if unlabeled:
        logger.warning(
            "Split %s: %d image(s) had no label file and were labelled '%s'",
            display, unlabeled, class_names[0],
        )
    if rejected:
        logger.warning("Split %s: skipped %d malformed annotation line(s)", display, rejected)

    logger.info("Loaded %d images from %s dataset", len(samples), display)

    return SampleSet(
        split=split,
        samples=tuple(samples),
        images_found=len(images),
        unlabeled_images=unlabeled,
        rejected_lines=rejected,
    )


# ═══════════════════════════════════════════════════════════════════════════
# All-splits loader (convenience)
# ═══════════════════════════════════════════════════════════════════════════

def load_split(config: DatasetConfig, split: str, options: Optional[ScanOptions] = None) -> SampleSet:
    """Scan the configured directory of ``split``."""
    return scan_split(config.split_path(split), config, split, options or ScanOptions())


def load_splits(
    config: DatasetConfig,
    splits: Sequence[str] = SPLITS,
    options: Optional[ScanOptions] = None,
) -> Dict[str, SampleSet]:
    """Scan several splits; returns ``{split: SampleSet}``."""
    result = {split: load_split(config, split, options) for split in splits}
    logger.info(
        "Splits loaded: %s",
        ", ".join(f"{name}={len(s)}" for name, s in result.items()),
    )
    return result
