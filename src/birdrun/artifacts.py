# Copyright (c) Syntropy Systems
"""Artifact layout, presence checks and atomic publishing.

An artifact that exists at its final path is a finished unit of work.
Nothing is ever written to a final path directly: producers write to a
hidden staging sibling and `publish` renames it into place, so a file at
the final path is always complete.
"""
from __future__ import annotations

import contextlib
import logging
import os
import tempfile
from pathlib import Path

from birdrun.models.work import Operation, Stage, WorkItem

logger = logging.getLogger(__name__)

MODEL_SUFFIX = ".h5"
PREDICTION_SUFFIX = ".prediction"


class ArtifactStore:
    """Filesystem-backed record of which models and predictions exist."""

    work_dir: Path

    def __init__(self, work_dir: Path) -> None:
        self.work_dir = work_dir

    @staticmethod
    def exists(path: Path) -> bool:
        """Pure presence check. Content is not inspected."""
        return path.is_file()

    # --- Layout ---

    def model_base(self, stage: Stage, model_index: int, fold_index: int | None = None) -> Path:
        """Model path without extension, e.g. ``model_second_3_1``."""
        if stage is Stage.FIRST:
            if fold_index is not None:
                msg = "first-stage models have no fold"
                raise ValueError(msg)
            return self.work_dir / f"model_first_{model_index}"
        if fold_index is None:
            msg = "second-stage models need a fold"
            raise ValueError(msg)
        return self.work_dir / f"model_second_{model_index}_{fold_index}"

    def prediction_base(self, stage: Stage, model_index: int, fold_index: int | None = None) -> Path:
        """Prediction path without extension, derived from the model path."""
        base = self.model_base(stage, model_index, fold_index)
        return base.with_name(base.name + PREDICTION_SUFFIX)

    @staticmethod
    def with_suffix(base: Path) -> Path:
        return base.with_name(base.name + MODEL_SUFFIX)

    def model_path(self, item: WorkItem) -> Path:
        return self.with_suffix(self.model_base(item.stage, item.model_index, item.fold_index))

    def prediction_path(self, item: WorkItem) -> Path:
        return self.with_suffix(
            self.prediction_base(item.stage, item.model_index, item.fold_index)
        )

    def target(self, item: WorkItem) -> Path:
        """Artifact whose presence marks the item as done."""
        if item.operation is Operation.TRAIN:
            return self.model_path(item)
        return self.prediction_path(item)

    def log_path(self, item_or_name: WorkItem | str) -> Path:
        """Where the output of an invocation is captured."""
        if isinstance(item_or_name, WorkItem):
            name = self.target(item_or_name).name
        else:
            name = item_or_name
        return self.work_dir / "logs" / f"{name}.log"

    @property
    def first_predictions(self) -> Path:
        return self.work_dir / "prediction_first.csv"

    @property
    def final_predictions(self) -> Path:
        return self.work_dir / "prediction_final.csv"

    def prediction_artifacts(self, stage: Stage | None = None) -> list[Path]:
        """Existing prediction artifacts, sorted.

        With a stage, only that stage's predictions; with None, every
        prediction of both stages (the final bagging pass).
        """
        if stage is None:
            pattern = f"model_*{PREDICTION_SUFFIX}{MODEL_SUFFIX}"
        else:
            pattern = f"model_{stage.value}_*{PREDICTION_SUFFIX}{MODEL_SUFFIX}"
        return sorted(p for p in self.work_dir.glob(pattern) if p.is_file())

    # --- Publishing ---

    @staticmethod
    def staging_path(final: Path) -> Path:
        """Hidden sibling of `final` that no artifact glob matches."""
        return final.with_name(f".{final.stem}.partial{final.suffix}")

    def publish(self, staging: Path, final: Path, overwrite: bool = False) -> bool:
        """Move a staged artifact into place.

        Returns False if `staging` does not exist. Unless `overwrite` is
        set, a `final` that appeared in the meantime wins and the staged
        copy is dropped.
        """
        if not staging.is_file():
            return False
        if not overwrite and self.exists(final):
            logger.warning("Artifact %s appeared concurrently; keeping existing file.", final)
            with contextlib.suppress(OSError):
                staging.unlink()
            return True
        os.replace(staging, final)
        return True

    @staticmethod
    def discard(staging: Path) -> None:
        """Remove a leftover staging file."""
        with contextlib.suppress(OSError):
            staging.unlink()


def atomic_write_text(path: Path, text: str) -> None:
    """Write text to `path` through a temp file in the same directory."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w") as f:
            _ = f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp_name)
        raise
