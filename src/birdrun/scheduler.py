# Copyright (c) Syntropy Systems
"""Ensemble work-item enumeration and scheduling."""
from __future__ import annotations

import contextlib
import itertools
import logging
import re
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import TYPE_CHECKING

from birdrun import db
from birdrun.errors import BirdrunError, MissingInputError
from birdrun.models.work import Operation, Stage, WorkItem
from birdrun.runner import kill_active

if TYPE_CHECKING:
    import sqlite3
    from collections.abc import Iterator, Sequence
    from pathlib import Path

    from birdrun.artifacts import ArtifactStore
    from birdrun.invokers import EvaluatorInvoker, TrainerInvoker
    from birdrun.models.config import PipelineConfig

logger = logging.getLogger(__name__)

_INDEX_SEPARATORS = re.compile(r"[\s,]+")


# --- Argument parsing ---


def is_flag(token: str) -> bool:
    """Whether an argument is flag-style (starts with '-')."""
    return token.startswith("-")


def parse_index_list(token: str) -> tuple[int, ...]:
    """Parse ``"1 3"``, ``"1,3"`` or ``"2"`` into sorted unique indices."""
    values: set[int] = set()
    for part in _INDEX_SEPARATORS.split(token.strip()):
        if not part:
            continue
        try:
            value = int(part)
        except ValueError:
            msg = f"Invalid index '{part}' in '{token}'"
            raise BirdrunError(msg, exit_code=2) from None
        if value < 1:
            msg = f"Indices start at 1, got {value}"
            raise BirdrunError(msg, exit_code=2)
        values.add(value)
    if not values:
        msg = f"Empty index list '{token}'"
        raise BirdrunError(msg, exit_code=2)
    return tuple(sorted(values))


@dataclass(frozen=True)
class Overrides:
    """Index/fold selections and the arguments left for the learner.

    None means "the full range".
    """

    indices: tuple[int, ...] | None = None
    folds: tuple[int, ...] | None = None
    extra_args: tuple[str, ...] = ()


def parse_overrides(args: Sequence[str], slots: int) -> Overrides:
    """Split stage arguments into positional index lists and pass-through args.

    Leading non-flag tokens fill up to `slots` override slots in the order
    (indices, folds). A flag in a slot ends the sniffing: that slot and the
    following ones default to the full range and everything from the flag
    on is passed through verbatim.
    """
    selections: list[tuple[int, ...] | None] = [None, None]
    pos = 0
    while pos < slots and pos < len(args) and args[pos] != "" and not is_flag(args[pos]):
        selections[pos] = parse_index_list(args[pos])
        pos += 1
    return Overrides(
        indices=selections[0],
        folds=selections[1],
        extra_args=tuple(args[pos:]),
    )


# --- Enumeration ---


def _full(count: int) -> tuple[int, ...]:
    return tuple(range(1, count + 1))


def stage1_train_items(model_count: int, indices: Sequence[int] | None = None) -> list[WorkItem]:
    """First-stage training, one item per model index."""
    return [
        WorkItem(Stage.FIRST, i, Operation.TRAIN)
        for i in sorted(set(indices or _full(model_count)))
    ]


def stage1_predict_items(model_count: int) -> list[WorkItem]:
    """First-stage evaluation; always the full range."""
    return [WorkItem(Stage.FIRST, i, Operation.EVALUATE) for i in _full(model_count)]


def stage2_train_items(
    model_count: int,
    pseudo_folds: int,
    indices: Sequence[int] | None = None,
    folds: Sequence[int] | None = None,
) -> list[WorkItem]:
    """Second-stage training over model index (outer) x fold (inner)."""
    combos = itertools.product(
        sorted(set(indices or _full(model_count))),
        sorted(set(folds or _full(pseudo_folds))),
    )
    return [WorkItem(Stage.SECOND, i, Operation.TRAIN, fold_index=h) for i, h in combos]


def stage2_predict_items(model_count: int, pseudo_folds: int) -> list[WorkItem]:
    """Second-stage evaluation over the full cross product."""
    combos = itertools.product(_full(model_count), _full(pseudo_folds))
    return [WorkItem(Stage.SECOND, i, Operation.EVALUATE, fold_index=h) for i, h in combos]


# --- Scheduling ---


class EnsembleScheduler:
    """Drives work items to completion, skipping finished ones.

    Stops dispatching at the first nonzero status and reports it. With
    more than one worker, sibling items run in a bounded thread pool;
    items already running are allowed to finish.
    """

    config: PipelineConfig
    store: ArtifactStore
    trainer: TrainerInvoker
    evaluator: EvaluatorInvoker
    db_path: Path | None
    workers: int

    def __init__(
        self,
        config: PipelineConfig,
        store: ArtifactStore,
        trainer: TrainerInvoker,
        evaluator: EvaluatorInvoker,
        db_path: Path | None = None,
        workers: int = 1,
    ) -> None:
        self.config = config
        self.store = store
        self.trainer = trainer
        self.evaluator = evaluator
        self.db_path = db_path
        self.workers = max(1, workers)

    @contextlib.contextmanager
    def _db(self) -> Iterator[sqlite3.Connection | None]:
        """Connection to the state table, or None when recording is off."""
        if self.db_path is None:
            yield None
            return
        conn = db.get_connection(self.db_path)
        try:
            yield conn
        finally:
            conn.close()

    def plan(self, items: Sequence[WorkItem]) -> list[tuple[WorkItem, bool]]:
        """Pair each item with whether its artifact already exists."""
        return [(item, self.store.exists(self.store.target(item))) for item in items]

    def execute(self, item: WorkItem, extra_args: Sequence[str] = ()) -> int:
        """Run one item unless its artifact exists. Returns its status."""
        target = self.store.target(item)
        model_base = self.store.model_base(item.stage, item.model_index, item.fold_index)
        is_train = item.operation is Operation.TRAIN

        # Checked right before dispatch so a concurrent run is never repeated
        if self.store.exists(target):
            if is_train:
                logger.info("Using existing model %s.", model_base.name)
            else:
                logger.info("Using existing predictions %s.", target.name)
            with self._db() as conn:
                if conn is not None:
                    db.mark_skipped(conn, item, target)
            return 0

        if not is_train and not self.store.exists(self.store.with_suffix(model_base)):
            msg = f"Cannot evaluate {model_base.name}: model artifact is missing"
            with self._db() as conn:
                if conn is not None:
                    db.mark_running(conn, item, target, self.store.log_path(item))
                    db.complete_work_item(conn, item, 1, error_message=msg)
            raise MissingInputError(msg)

        with self._db() as conn:
            if conn is not None:
                db.mark_running(conn, item, target, self.store.log_path(item))

        if is_train:
            logger.info("Training model %s.", model_base.name)
            status = self.trainer.train(model_base, item.train_list, item.seed, extra_args)
        else:
            prediction_base = self.store.prediction_base(
                item.stage, item.model_index, item.fold_index
            )
            status = self.evaluator.evaluate(model_base, "test", prediction_base, extra_args)

        with self._db() as conn:
            if conn is not None:
                db.complete_work_item(conn, item, status)

        if status != 0:
            logger.error(
                "%s of %s failed with status %d (see %s).",
                item.operation.value.capitalize(),
                model_base.name,
                status,
                self.store.log_path(item),
            )
        elif is_train:
            logger.info("Done training model %s.", model_base.name)
        return status

    def run(self, items: Sequence[WorkItem], extra_args: Sequence[str] = ()) -> int:
        """Run all items; return 0 or the first failing status."""
        if self.workers == 1 or len(items) <= 1:
            for item in items:
                status = self.execute(item, extra_args)
                if status != 0:
                    return status
            return 0
        return self._run_pool(items, extra_args)

    def _run_pool(self, items: Sequence[WorkItem], extra_args: Sequence[str]) -> int:
        pending = iter(items)
        in_flight: dict[Future[int], WorkItem] = {}
        first_status = 0
        first_error: BirdrunError | None = None

        with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="birdrun") as pool:

            def fill() -> None:
                while len(in_flight) < self.workers:
                    item = next(pending, None)
                    if item is None:
                        return
                    in_flight[pool.submit(self.execute, item, extra_args)] = item

            try:
                fill()
                while in_flight:
                    done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                    for future in done:
                        _ = in_flight.pop(future)
                        try:
                            status = future.result()
                        except BirdrunError as e:
                            if first_status == 0:
                                first_status = e.exit_code
                                first_error = e
                            continue
                        if status != 0 and first_status == 0:
                            first_status = status
                    # No new work once a sibling failed
                    if first_status == 0:
                        fill()
            except KeyboardInterrupt:
                logger.warning("Interrupted; killing %d running job(s).", len(in_flight))
                _ = kill_active(grace_period=self.config.kill_grace_period)
                pool.shutdown(wait=True, cancel_futures=True)
                raise

        if first_error is not None:
            raise first_error
        return first_status
