"""
Exception taxonomy for the classification pipeline.

Fatal errors (``ConfigInvalid``, ``BackendUnavailable``, ``TrainingFailed``)
abort the current operation.  Dataset-level errors are recovered inside the
scanner, and post-training errors (evaluate / save / predict) are converted
into result values by the orchestrator.
"""

from __future__ import annotations

from typing import List, Sequence


class PcbDefectError(Exception):
    """Base class for every error raised by this package."""


class ConfigInvalid(PcbDefectError):
    """The dataset config file is missing, unparseable or inconsistent."""


class DatasetDirectoryMissing(PcbDefectError):
    """A split's image directory does not exist on disk."""

    def __init__(self, split: str, path: str):
        self.split = split
        self.path = path
        super().__init__(f"{split} images directory not found: {path}")


class LabelLineMalformed(PcbDefectError):
    """An annotation line has a non-integer or out-of-range class index."""

    def __init__(self, label_file: str, line: str, reason: str):
        self.label_file = label_file
        self.line = line
        self.reason = reason
        super().__init__(f"{label_file}: {reason} ({line!r})")


class BackendUnavailable(PcbDefectError):
    """Every candidate training profile failed to construct.

    Attributes
    ----------
    attempts : list
        One ``ConstructionAttempt`` per candidate, in the order tried.
    hints : list[str]
        Remediation guidance collected from the failures.
    """

    def __init__(self, attempts: Sequence, hints: Sequence[str] = ()):
        self.attempts = list(attempts)
        self.hints = list(hints)
        super().__init__(self._render())

    @property
    def diagnostics(self) -> List[str]:
        return [f"{a.profile.name} ({a.profile.architecture}): {a.reason}" for a in self.attempts]

    def _render(self) -> str:
        lines = ["No training backend profile could be initialised:"]
        lines.extend(f"  - {d}" for d in self.diagnostics)
        if self.hints:
            lines.append("Suggestions:")
            lines.extend(f"  * {h}" for h in self.hints)
        return "\n".join(lines)


class TrainingFailed(PcbDefectError):
    """The backend raised while fitting, or there was nothing to fit."""

    def __init__(self, message: str, hints: Sequence[str] = ()):
        self.hints = list(hints)
        text = message
        if self.hints:
            text += "\n" + "\n".join(f"  * {h}" for h in self.hints)
        super().__init__(text)


class EvaluationFailed(PcbDefectError):
    """Scoring a sample set failed."""


class SaveFailed(PcbDefectError):
    """Writing the model bundle failed."""


class ModelLoadFailed(PcbDefectError):
    """A model bundle is missing, incomplete or unreadable."""


class PredictionFailed(PcbDefectError):
    """Running the fitted pipeline on a single image failed."""
