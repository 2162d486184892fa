# Copyright (c) Syntropy Systems
"""Pydantic models for the pipeline configuration file."""

from __future__ import annotations

from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, field_validator, model_validator
from typing_extensions import Self

from .base import FrozenModel

ThresholdPolicy = Literal["ge", "gt", "margin"]


class NetworkConfig(FrozenModel):
    """Network-specific learner settings."""

    width: int = Field(default=256, ge=1)
    layers: str = ""
    options: tuple[str, ...] = ()


class CommandsConfig(FrozenModel):
    """External commands, as argv prefixes."""

    learner: tuple[str, ...]
    loader: str = "code/load_data.py"
    filelists: tuple[str, ...] = ("code/create_filelists.py",)
    spectrograms: tuple[str, ...] = ("code/prepare_spectrograms.sh",)
    # None selects the built-in mean over id,score tables
    bagging: Optional[tuple[str, ...]] = ("code/predict.py",)

    @field_validator("learner")
    @classmethod
    def _learner_not_empty(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        if not value:
            msg = "learner command must not be empty"
            raise ValueError(msg)
        return value

    @field_validator("learner", "filelists", "spectrograms", "bagging", mode="before")
    @classmethod
    def _split_string(cls, value: object) -> object:
        # A plain string is a single-token command
        if isinstance(value, str):
            return (value,)
        return value


class PipelineConfig(FrozenModel):
    """Validated pipeline configuration, immutable once loaded."""

    project_dir: Path = Path()
    network: str = "default"
    networks: dict[str, NetworkConfig] = Field(
        default_factory=lambda: {"default": NetworkConfig()}
    )
    work_path: Path = Path("work")
    label_path: Path = Path("labels")
    audio_path: Path = Path("audio")
    train: tuple[str, ...] = ("train",)
    test: str = "test"
    model_count: int = Field(default=5, ge=1)
    pseudo_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    pseudo_folds: int = Field(default=2, ge=1)
    pseudo_policy: ThresholdPolicy = "ge"
    pseudo_seed: int = 0
    pseudo_prefix: Optional[str] = None
    pseudo_suffix: str = ".wav"
    workers: int = Field(default=1, ge=1)
    kill_grace_period: float = Field(default=10.0, ge=0.0)
    commands: CommandsConfig

    @field_validator("train", mode="before")
    @classmethod
    def _train_as_list(cls, value: object) -> object:
        if isinstance(value, str):
            return tuple(value.split())
        return value

    @model_validator(mode="after")
    def _check_network(self) -> Self:
        if self.network not in self.networks:
            known = ", ".join(sorted(self.networks)) or "none"
            msg = f"network '{self.network}' is not defined (known: {known})"
            raise ValueError(msg)
        return self

    @property
    def net(self) -> NetworkConfig:
        """Settings of the active network."""
        return self.networks[self.network]

    def resolve(self, path: Path | str) -> Path:
        """Resolve a path relative to the project directory."""
        path = Path(path)
        if path.is_absolute():
            return path
        return self.project_dir / path

    @property
    def work_dir(self) -> Path:
        return self.resolve(self.work_path)

    @property
    def label_dir(self) -> Path:
        return self.resolve(self.label_path)

    @property
    def audio_dir(self) -> Path:
        return self.resolve(self.audio_path)

    @property
    def list_dir(self) -> Path:
        return self.work_dir / "filelists"

    @property
    def spect_dir(self) -> Path:
        return self.work_dir / "spect"

    @property
    def reference_csv(self) -> Path:
        """Label CSV of the test partition, used to key bagged predictions."""
        return self.label_dir / f"{self.test}.csv"

    @property
    def out_prefix(self) -> str:
        if self.pseudo_prefix is None:
            return f"{self.test}/"
        return self.pseudo_prefix

    def resolve_command(self, argv: tuple[str, ...]) -> list[str]:
        """Resolve a command's program path against the project directory.

        Bare program names (``python``) are left for PATH lookup.
        """
        if not argv:
            return []
        program = argv[0]
        if "/" in program and not Path(program).is_absolute():
            program = str(self.resolve(program))
        return [program, *argv[1:]]
