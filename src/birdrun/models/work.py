# Copyright (c) Syntropy Systems
"""Work items and their recorded state."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .base import BirdrunBaseModel


class Stage(str, Enum):
    """Training round a model belongs to."""

    FIRST = "first"
    SECOND = "second"


class Operation(str, Enum):
    """What a work item does to its model."""

    TRAIN = "train"
    EVALUATE = "evaluate"


@dataclass(frozen=True)
class WorkItem:
    """A single schedulable unit: train or evaluate one ensemble member."""

    stage: Stage
    model_index: int
    operation: Operation
    fold_index: Optional[int] = None

    def __post_init__(self) -> None:
        if (self.stage is Stage.SECOND) != (self.fold_index is not None):
            msg = "fold_index is required for second-stage items and only for them"
            raise ValueError(msg)

    @property
    def seed(self) -> int:
        """Seed of the model; a deterministic function of its index."""
        return self.model_index

    @property
    def key(self) -> str:
        """Unique key, e.g. ``train:first:3`` or ``evaluate:second:2:1``."""
        parts = [self.operation.value, self.stage.value, str(self.model_index)]
        if self.fold_index is not None:
            parts.append(str(self.fold_index))
        return ":".join(parts)

    @property
    def train_list(self) -> str:
        """File list the model is trained on."""
        if self.fold_index is None:
            return "train"
        return f"train_pseudo_{self.fold_index}"

    def label(self) -> str:
        if self.fold_index is None:
            return f"{self.stage.value} #{self.model_index}"
        return f"{self.stage.value} #{self.model_index} fold {self.fold_index}"


class WorkItemRecord(BirdrunBaseModel):
    """Row of the work_items state table."""

    key: str
    stage: str
    operation: str
    model_index: int
    fold_index: Optional[int] = None
    artifact: str
    status: str
    attempt: int = 0
    exit_code: Optional[int] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    log_path: Optional[str] = None
    error_message: Optional[str] = None
