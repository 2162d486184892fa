# Copyright (c) Syntropy Systems
"""Shared Pydantic model helpers for birdrun."""

from __future__ import annotations

from typing import ClassVar

from pydantic import BaseModel, ConfigDict


class BirdrunBaseModel(BaseModel):
    """Base model with shared config for birdrun records."""

    model_config: ClassVar[ConfigDict] = ConfigDict(
        extra="ignore",
        populate_by_name=True,
    )


class FrozenModel(BaseModel):
    """Immutable model that rejects unknown keys (configuration files)."""

    model_config: ClassVar[ConfigDict] = ConfigDict(
        extra="forbid",
        frozen=True,
        populate_by_name=True,
    )
