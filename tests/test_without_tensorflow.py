"""
Behaviour on a host where TensorFlow cannot be imported.

The ``no_tensorflow`` fixture hides the distribution and forgets every
package module that imports it, so they are loaded afresh.
"""

import importlib
import sys

import pytest

import pcbdefect
from pcbdefect.config import RuntimeConfig
from pcbdefect.errors import BackendUnavailable

from conftest import X86

TF_MODULES = ("pcbdefect.cli", "pcbdefect.runner", "pcbdefect.pipeline", "pcbdefect.train")


@pytest.fixture
def no_tensorflow(monkeypatch):
    monkeypatch.setitem(sys.modules, "tensorflow", None)
    for name in TF_MODULES:
        monkeypatch.delitem(sys.modules, name, raising=False)
        monkeypatch.delattr(pcbdefect, name.rsplit(".", 1)[1], raising=False)


def test_cli_info_works(no_tensorflow, yolo_root, capsys):
    cli = importlib.import_module("pcbdefect.cli")

    assert cli.main(["--config", str(yolo_root / "data.yaml"), "info"]) == 0
    assert "Number of classes: 3" in capsys.readouterr().out


def test_training_reports_install_hint(no_tensorflow, dataset_config, tmp_path):
    runner = importlib.import_module("pcbdefect.runner")
    orchestrator = runner.TrainingOrchestrator(
        dataset_config, RuntimeConfig(output_dir=tmp_path / "Output"), hardware=X86,
    )

    with pytest.raises(BackendUnavailable) as info:
        orchestrator.train()

    assert [a.error_type for a in info.value.attempts] == ["ModuleNotFoundError"] * 3
    assert any("pip install tensorflow" in h for h in info.value.hints)


def test_cli_test_prints_install_hint(no_tensorflow, yolo_root, tmp_path, capsys):
    cli = importlib.import_module("pcbdefect.cli")

    code = cli.main(["--config", str(yolo_root / "data.yaml"), "--output-dir", str(tmp_path), "test"])

    assert code == 1
    assert "pip install tensorflow" in capsys.readouterr().out
