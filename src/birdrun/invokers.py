# Copyright (c) Syntropy Systems
"""Invocations of the external learner and helper commands.

The learner is opaque: birdrun only builds its argv, runs it, and looks at
the exit status and the artifact it leaves behind.
"""
from __future__ import annotations

import logging
import shlex
from typing import TYPE_CHECKING

from birdrun.artifacts import ArtifactStore
from birdrun.errors import InvocationError
from birdrun.runner import ProcessRunner

if TYPE_CHECKING:
    from collections.abc import Sequence
    from pathlib import Path

    from birdrun.models.config import PipelineConfig

logger = logging.getLogger(__name__)

# Status reported when the learner exits 0 but writes no artifact
MISSING_OUTPUT_STATUS = 1


def run_command(
    config: PipelineConfig,
    argv: Sequence[str],
    log_path: Path,
    stdout_path: Path | None = None,
) -> int:
    """Run an external command in the project directory, return its status."""
    runner = ProcessRunner(
        command_argv=list(argv),
        log_path=log_path,
        stdout_path=stdout_path,
        workdir=config.project_dir,
    )
    return runner.run(grace_period=config.kill_grace_period)


def check_command(
    config: PipelineConfig,
    argv: Sequence[str],
    log_path: Path,
    stdout_path: Path | None = None,
) -> None:
    """Run an external command; raise InvocationError on nonzero status."""
    status = run_command(config, argv, log_path, stdout_path)
    if status != 0:
        msg = f"Command failed with status {status}: {shlex.join(argv)} (see {log_path})"
        raise InvocationError(msg, status)


class _LearnerInvoker:
    """Shared plumbing: run the learner against a staging file, then publish."""

    config: PipelineConfig
    store: ArtifactStore

    def __init__(self, config: PipelineConfig, store: ArtifactStore) -> None:
        self.config = config
        self.store = store

    def _data_args(self, filelists: str) -> list[str]:
        config = self.config
        return [
            "--var", f"input:labels={config.label_dir}/*.csv",
            "--var", f"input:data={config.spect_dir}/%(id)s.h5",
            "--var", f"filelist:path={config.list_dir}",
            "--var", f"filelist:lists={filelists}",
        ]

    def _invoke(self, argv: list[str], final: Path, staging: Path) -> int:
        log_path = self.store.log_path(final.name)
        self.store.discard(staging)
        status = run_command(self.config, argv, log_path)
        if status != 0:
            self.store.discard(staging)
            return status
        if not self.store.publish(staging, final):
            logger.error("Learner exited 0 but wrote no %s (see %s)", final.name, log_path)
            return MISSING_OUTPUT_STATUS
        return 0


class TrainerInvoker(_LearnerInvoker):
    """Trains one binary classifier and persists it to ``<model>.h5``."""

    def build_argv(
        self,
        save_path: Path,
        filelists: str,
        seed: int,
        extra_args: Sequence[str] = (),
    ) -> list[str]:
        """Learner argv for training with the active network."""
        config = self.config
        net = config.net
        loader = config.resolve(config.commands.loader)
        return [
            *config.resolve_command(config.commands.learner),
            "--mode=train",
            "--problem=binary",
            "--var", "measures=",
            "--inputs", "filelist:filelist",
            "--var", f"filelist:path={config.list_dir}",
            "--var", f"filelist:lists={filelists}",
            "--process", f"filelistshuffle:shuffle(seed={seed},memory=25000)",
            "--process",
            (
                f"input:{loader}(type=spect,downmix=0,cycle=0,denoise=1,"
                f"width={net.width},seed={seed})"
            ),
            "--var", f"input:labels={config.label_dir}/*.csv",
            "--var", f"input:data={config.spect_dir}/%(id)s.h5",
            "--var", "input:data_vars=1k",
            "--process", "collect:collect",
            "--var", "collect:source=0..1",
            "--process", "scale@1:range(out_min=0.01,out_max=0.99)",
            "--layers", net.layers,
            "--save", str(save_path),
            *net.options,
            *extra_args,
        ]

    def train(
        self,
        model_base: Path,
        filelists: str,
        seed: int,
        extra_args: Sequence[str] = (),
    ) -> int:
        """Train a model. Returns 0 on success, the learner status otherwise."""
        final = self.store.with_suffix(model_base)
        staging = self.store.staging_path(final)
        logger.info("Computing model %s with network %s.", model_base.name, self.config.network)
        argv = self.build_argv(staging, filelists, seed, extra_args)
        return self._invoke(argv, final, staging)


class EvaluatorInvoker(_LearnerInvoker):
    """Evaluates a trained model; shuffling and augmentation are bypassed."""

    def build_argv(
        self,
        model_path: Path,
        filelists: str,
        save_path: Path,
        extra_args: Sequence[str] = (),
    ) -> list[str]:
        """Learner argv for deterministic, order-preserving evaluation."""
        return [
            *self.config.resolve_command(self.config.commands.learner),
            "--mode=evaluate",
            *self._data_args(filelists),
            "--var", "filelistshuffle:bypass=1",
            "--var", "augment:bypass=1",
            "--load", str(model_path),
            "--save", str(save_path),
            *extra_args,
        ]

    def evaluate(
        self,
        model_base: Path,
        filelists: str,
        prediction_base: Path,
        extra_args: Sequence[str] = (),
    ) -> int:
        """Write predictions of `model_base` for `filelists`."""
        final = self.store.with_suffix(prediction_base)
        staging = self.store.staging_path(final)
        logger.info("Evaluating model %s.", model_base.name)
        argv = self.build_argv(self.store.with_suffix(model_base), filelists, staging, extra_args)
        return self._invoke(argv, final, staging)
