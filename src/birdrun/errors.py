# Copyright (c) Syntropy Systems
"""Exceptions raised by the birdrun pipeline."""
from __future__ import annotations


class BirdrunError(RuntimeError):
    """Base error. Carries the exit code the pipeline should report."""

    exit_code: int = 1

    def __init__(self, message: str, exit_code: int | None = None) -> None:
        super().__init__(message)
        if exit_code is not None:
            self.exit_code = exit_code


class ConfigError(BirdrunError):
    """Project directory or configuration is missing or invalid."""


class MissingInputError(BirdrunError):
    """A stage input is absent, empty or unreadable."""


class InvocationError(BirdrunError):
    """An external command exited with a nonzero status."""

    def __init__(self, message: str, status: int) -> None:
        super().__init__(message, exit_code=status)
        self.status = status
