# Copyright (c) Syntropy Systems
"""Pseudo-label generation from bagged first-stage predictions.

Confident identifiers are split at random into K disjoint folds. Each fold
becomes a file list that is appended to the base training list for one
second-stage ensemble.
"""
from __future__ import annotations

import logging
import random
from typing import TYPE_CHECKING, Callable

from birdrun.bagging import read_bagged_csv
from birdrun.errors import MissingInputError
from birdrun.filelists import write_list

if TYPE_CHECKING:
    from collections.abc import Sequence
    from pathlib import Path

    from birdrun.models.config import PipelineConfig

logger = logging.getLogger(__name__)

ThresholdRule = Callable[[float, float], bool]

THRESHOLD_POLICIES: dict[str, ThresholdRule] = {
    "ge": lambda score, tau: score >= tau,
    "gt": lambda score, tau: score > tau,
    # Confident either way: usable as positive or negative pseudo-label
    "margin": lambda score, tau: max(score, 1.0 - score) >= tau,
}


def select_candidates(
    scores: Sequence[tuple[str, float | None]],
    threshold: float,
    policy: str | ThresholdRule = "ge",
) -> list[str]:
    """Identifiers whose score passes the threshold rule, in input order.

    Missing scores never pass.
    """
    rule = THRESHOLD_POLICIES[policy] if isinstance(policy, str) else policy
    return [key for key, score in scores if score is not None and rule(score, threshold)]


def assign_folds(identifiers: Sequence[str], folds: int, seed: int) -> list[list[str]]:
    """Randomly partition `identifiers` into `folds` disjoint groups.

    Fold sizes differ by at most one. Within a fold the input order is kept.
    """
    if folds < 1:
        msg = f"fold count must be positive, got {folds}"
        raise ValueError(msg)
    order = list(range(len(identifiers)))
    random.Random(seed).shuffle(order)  # noqa: S311
    fold_of = [0] * len(identifiers)
    for position, index in enumerate(order):
        fold_of[index] = position % folds
    groups: list[list[str]] = [[] for _ in range(folds)]
    for index, key in enumerate(identifiers):
        groups[fold_of[index]].append(key)
    return groups


class PseudoLabelGenerator:
    """Thresholds a bagged prediction and writes one file list per fold."""

    threshold: float
    folds: int
    policy: str | ThresholdRule
    seed: int
    prefix: str
    suffix: str

    def __init__(
        self,
        threshold: float,
        folds: int,
        policy: str | ThresholdRule = "ge",
        seed: int = 0,
        prefix: str = "",
        suffix: str = "",
    ) -> None:
        if isinstance(policy, str) and policy not in THRESHOLD_POLICIES:
            msg = f"Unknown threshold policy '{policy}'"
            raise ValueError(msg)
        self.threshold = threshold
        self.folds = folds
        self.policy = policy
        self.seed = seed
        self.prefix = prefix
        self.suffix = suffix

    @classmethod
    def from_config(cls, config: PipelineConfig) -> PseudoLabelGenerator:
        return cls(
            threshold=config.pseudo_threshold,
            folds=config.pseudo_folds,
            policy=config.pseudo_policy,
            seed=config.pseudo_seed,
            prefix=config.out_prefix,
            suffix=config.pseudo_suffix,
        )

    def entry(self, identifier: str) -> str:
        """File-list entry for an identifier."""
        return f"{self.prefix}{identifier}{self.suffix}"

    def partition(self, scores: Sequence[tuple[str, float | None]]) -> list[list[str]]:
        """Thresholded identifiers split into folds."""
        candidates = select_candidates(scores, self.threshold, self.policy)
        if not candidates:
            msg = (
                f"Threshold {self.threshold} selects no pseudo-label candidates "
                f"out of {len(scores)} predictions"
            )
            raise MissingInputError(msg)
        logger.info(
            "Selected %d of %d identifiers for pseudo-labelling.",
            len(candidates),
            len(scores),
        )
        groups = assign_folds(candidates, self.folds, self.seed)
        for fold, group in enumerate(groups, start=1):
            if not group:
                logger.warning("Pseudo-label fold %d is empty.", fold)
        return groups

    @staticmethod
    def list_path(list_dir: Path, fold: int) -> Path:
        return list_dir / f"test_pseudo_{fold}"

    def generate(self, bagged: Path, list_dir: Path, header: bool = True) -> list[list[str]]:
        """Read `bagged` and write ``test_pseudo_<h>`` lists into `list_dir`.

        Returns the written entries per fold.
        """
        groups = self.partition(read_bagged_csv(bagged, header=header))
        written: list[list[str]] = []
        for fold, group in enumerate(groups, start=1):
            entries = [self.entry(key) for key in group]
            write_list(self.list_path(list_dir, fold), entries)
            written.append(entries)
        return written
