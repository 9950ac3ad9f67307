from pathlib import Path

import pytest

from pcbdefect.config import DatasetConfig
from pcbdefect.data import (
    SampleSet,
    ScanOptions,
    labels_dir_for,
    load_split,
    load_splits,
    parse_label_line,
    resolve_image_dir,
    scan_split,
)
from pcbdefect.errors import LabelLineMalformed

from conftest import CLASS_NAMES, add_split, write_image, write_labels


def config_for(root, train="train/images", val="valid/images", test="test/images"):
    return DatasetConfig(train, val, test, len(CLASS_NAMES), tuple(CLASS_NAMES), root=root)


# ── Path helpers ────────────────────────────────────────────────────────

def test_relative_paths_are_joined_under_root(tmp_path):
    assert resolve_image_dir("../train/images", tmp_path) == (tmp_path / "train" / "images").resolve()
    assert resolve_image_dir("./valid/images", tmp_path) == (tmp_path / "valid" / "images").resolve()


def test_absolute_paths_are_kept(tmp_path):
    assert resolve_image_dir(str(tmp_path / "x"), Path("elsewhere")) == tmp_path / "x"


def test_labels_dir_swaps_last_images_segment():
    assert labels_dir_for(Path("/d/images/train/images")) == Path("/d/images/train/labels")


def test_labels_dir_without_images_segment_is_the_image_dir():
    assert labels_dir_for(Path("/d/train/pics")) == Path("/d/train/pics")


def test_labels_dir_custom_names():
    options = ScanOptions(images_dir_name="img", labels_dir_name="ann")
    assert labels_dir_for(Path("/d/img"), options) == Path("/d/ann")


# ── Line parsing ────────────────────────────────────────────────────────

def test_only_leading_class_index_is_read():
    assert parse_label_line("2 0.1 0.2 0.3 0.4", CLASS_NAMES) == "redundant"
    assert parse_label_line("1", CLASS_NAMES) == "Short_circuit"


@pytest.mark.parametrize("line", ["x 0.1 0.2 0.3 0.4", "3 0.5 0.5 0.1 0.1", "-1 0 0 0 0", "1.5 0 0 0 0"])
def test_malformed_lines_raise(line):
    with pytest.raises(LabelLineMalformed):
        parse_label_line(line, CLASS_NAMES)


# ── Scanning ────────────────────────────────────────────────────────────

def test_one_sample_per_annotation_line(yolo_root, dataset_config):
    train = load_split(dataset_config, "train")

    assert [(Path(s.image_path).name, s.label) for s in train] == [
        ("a.png", "Dry_joint"),
        ("a.png", "redundant"),
        ("b.png", "Short_circuit"),
        ("c.png", "Dry_joint"),
    ]
    assert train.images_found == 3
    assert train.unlabeled_images == 1
    assert train.rejected_lines == 0


def test_unlabeled_image_gets_first_class(tmp_path):
    write_image(tmp_path / "train" / "images" / "lonely.jpg")

    samples = scan_split("train/images", config_for(tmp_path), "train")

    assert samples.labels == ["Dry_joint"]


def test_malformed_and_out_of_range_lines_are_skipped(tmp_path):
    add_split(tmp_path, "train", {
        "a.jpg": ["0 0.5 0.5 0.1 0.1", "7 0.5 0.5 0.1 0.1", "oops", "", "2 0.1 0.1 0.1 0.1"],
    })

    samples = scan_split("train/images", config_for(tmp_path), "train")

    assert samples.labels == ["Dry_joint", "redundant"]
    assert samples.rejected_lines == 2


def test_file_with_only_bad_lines_yields_nothing(tmp_path):
    add_split(tmp_path, "train", {"a.jpg": ["9 0 0 0 0"]})

    samples = scan_split("train/images", config_for(tmp_path), "train")

    assert samples.is_empty
    assert samples.images_found == 1


def test_missing_directory_is_empty_not_an_error(tmp_path, caplog):
    samples = scan_split("nowhere/images", config_for(tmp_path), "test")

    assert samples.is_empty
    assert "test images directory not found" in caplog.text
    assert not any(r.getMessage().lower().startswith("warning") for r in caplog.records)


def test_empty_split_path_is_empty(tmp_path, caplog):
    add_split(tmp_path, "train", {"a.jpg": ["0"]})
    assert scan_split("", config_for(tmp_path), "test").is_empty
    assert [r.getMessage() for r in caplog.records] == ["No test images directory configured"]


def test_extensions_filter_and_order(tmp_path):
    add_split(tmp_path, "train", {"b.PNG": ["1"], "a.jpeg": ["0"]})
    (tmp_path / "train" / "images" / "notes.txt").write_text("readme", encoding="utf-8")

    samples = scan_split("train/images", config_for(tmp_path), "train")

    assert [Path(p).name for p in samples.image_paths] == ["a.jpeg", "b.PNG"]


def test_labels_next_to_images_when_no_images_segment(tmp_path):
    write_image(tmp_path / "flat" / "x.jpg")
    write_labels(tmp_path / "flat" / "x.txt", "1 0.5 0.5 0.1 0.1")

    samples = scan_split("flat", config_for(tmp_path), "train")

    assert samples.labels == ["Short_circuit"]


def test_two_images_two_classes(tmp_path):
    add_split(tmp_path, "train", {"x.jpg": ["0 0.5 0.5 0.1 0.1"], "y.jpg": ["2 0.5 0.5 0.1 0.1"]})

    samples = scan_split("train/images", config_for(tmp_path), "train")

    assert {(Path(s.image_path).name, s.label) for s in samples} == {
        ("x.jpg", "Dry_joint"),
        ("y.jpg", "redundant"),
    }
    assert samples.label_counts() == {"Dry_joint": 1, "redundant": 1}


def test_load_splits_rescans_every_split(yolo_root, dataset_config):
    splits = load_splits(dataset_config)

    assert len(splits["train"]) == 4
    assert len(splits["val"]) == 1
    assert splits["test"].is_empty


def test_single_sample_set():
    samples = SampleSet.single("board.jpg")
    assert len(samples) == 1
    assert samples[0].image_path == "board.jpg"
    assert samples.split == "predict"
