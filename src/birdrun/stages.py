# Copyright (c) Syntropy Systems
"""The six pipeline stages and the full two-stage run.

Every stage can be re-run at any time. Work whose artifact already exists
is skipped, so an interrupted run resumes where it stopped.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Optional

from birdrun.artifacts import ArtifactStore
from birdrun.bagging import BaggingAggregator
from birdrun.errors import BirdrunError
from birdrun.filelists import concat_lists
from birdrun.invokers import EvaluatorInvoker, TrainerInvoker, check_command
from birdrun.models.work import Stage
from birdrun.pseudo import PseudoLabelGenerator
from birdrun.scheduler import (
    EnsembleScheduler,
    parse_overrides,
    stage1_predict_items,
    stage1_train_items,
    stage2_predict_items,
    stage2_train_items,
)

if TYPE_CHECKING:
    from collections.abc import Sequence
    from pathlib import Path

    from birdrun.models.config import PipelineConfig
    from birdrun.models.work import WorkItem

logger = logging.getLogger(__name__)


@dataclass
class PipelineContext:
    """Collaborators shared by all stages of one invocation."""

    config: PipelineConfig
    store: ArtifactStore
    scheduler: EnsembleScheduler
    aggregator: BaggingAggregator
    pseudo: PseudoLabelGenerator
    dry_run: bool = False

    @classmethod
    def from_config(
        cls,
        config: PipelineConfig,
        db_path: Optional[Path] = None,
        workers: Optional[int] = None,
        dry_run: bool = False,
    ) -> PipelineContext:
        store = ArtifactStore(config.work_dir)
        scheduler = EnsembleScheduler(
            config,
            store,
            TrainerInvoker(config, store),
            EvaluatorInvoker(config, store),
            db_path=db_path,
            workers=workers if workers is not None else config.workers,
        )
        return cls(
            config=config,
            store=store,
            scheduler=scheduler,
            aggregator=BaggingAggregator(config, store),
            pseudo=PseudoLabelGenerator.from_config(config),
            dry_run=dry_run,
        )


def _run_items(ctx: PipelineContext, items: Sequence[WorkItem], extra_args: Sequence[str]) -> int:
    if ctx.dry_run:
        for item, present in ctx.scheduler.plan(items):
            state = "exists" if present else "would run"
            logger.info("[dry-run] %s %s: %s", item.operation.value, item.label(), state)
        return 0
    ctx.config.work_dir.mkdir(parents=True, exist_ok=True)
    return ctx.scheduler.run(items, extra_args)


def _selection(
    args: Sequence[str],
    slots: int,
    indices: Optional[Sequence[int]],
    folds: Optional[Sequence[int]],
) -> tuple[Optional[tuple[int, ...]], Optional[tuple[int, ...]], tuple[str, ...]]:
    # Explicit options switch positional sniffing off entirely
    if indices is not None or folds is not None:
        return (
            tuple(sorted(set(indices))) if indices is not None else None,
            tuple(sorted(set(folds))) if folds is not None else None,
            tuple(args),
        )
    overrides = parse_overrides(args, slots)
    return overrides.indices, overrides.folds, overrides.extra_args


def _warn_out_of_range(kind: str, selected: Optional[Sequence[int]], count: int) -> None:
    extra = [i for i in selected or () if i > count]
    if extra:
        logger.warning(
            "%s %s exceed the configured count of %d and are not evaluated by predict stages.",
            kind,
            ", ".join(map(str, extra)),
            count,
        )


# --- Stages ---


def stage1_prepare(ctx: PipelineContext, args: Sequence[str] = ()) -> int:
    """Create the ``train`` and ``test`` file lists and the spectrograms."""
    config, store = ctx.config, ctx.store
    if args:
        logger.debug("stage1_prepare ignores arguments: %s", " ".join(args))

    logger.info("Preparing file lists.")
    if not ctx.dry_run:
        config.list_dir.mkdir(parents=True, exist_ok=True)
    for name, parts in (("train", config.train), ("test", (config.test,))):
        final = config.list_dir / name
        if store.exists(final):
            logger.info("Using existing file list %s.", name)
            continue
        if ctx.dry_run:
            logger.info("[dry-run] would create file list %s from %s", name, " ".join(parts))
            continue
        staging = store.staging_path(final)
        argv = [
            *config.resolve_command(config.commands.filelists),
            str(config.label_dir),
            *parts,
        ]
        store.discard(staging)
        try:
            check_command(config, argv, store.log_path(f"filelist_{name}"), stdout_path=staging)
            _ = store.publish(staging, final)
        finally:
            store.discard(staging)

    logger.info("Preparing spectrograms.")
    if ctx.dry_run:
        logger.info("[dry-run] would compute spectrograms into %s", config.spect_dir)
        return 0
    config.spect_dir.mkdir(parents=True, exist_ok=True)
    argv = [
        *config.resolve_command(config.commands.spectrograms),
        str(config.audio_dir),
        str(config.spect_dir),
    ]
    check_command(config, argv, store.log_path("spectrograms"))
    return 0


def stage1_train(
    ctx: PipelineContext,
    args: Sequence[str] = (),
    indices: Optional[Sequence[int]] = None,
) -> int:
    """Train the first-stage ensemble on the base training list."""
    logger.info("First training stage.")
    selected, _, extra_args = _selection(args, 1, indices, None)
    _warn_out_of_range("Model indices", selected, ctx.config.model_count)
    items = stage1_train_items(ctx.config.model_count, selected)
    return _run_items(ctx, items, extra_args)


def stage1_predict(ctx: PipelineContext, args: Sequence[str] = ()) -> int:
    """Evaluate every first-stage model and bag the predictions."""
    config, store = ctx.config, ctx.store
    logger.info("Computing first stage predictions.")
    status = _run_items(ctx, stage1_predict_items(config.model_count), args)
    if status != 0 or ctx.dry_run:
        return status

    logger.info("Bagging first stage predictions.")
    ctx.aggregator.bag(
        store.prediction_artifacts(Stage.FIRST),
        config.reference_csv,
        store.first_predictions,
    )
    logger.info("Done. First stage predictions are in %s.", store.first_predictions)
    return 0


def stage2_prepare(ctx: PipelineContext, args: Sequence[str] = ()) -> int:
    """Derive pseudo-labelled file lists from the first-stage prediction."""
    config, store = ctx.config, ctx.store
    if args:
        logger.debug("stage2_prepare ignores arguments: %s", " ".join(args))
    logger.info("Prepare second stage by analyzing first stage.")

    folds = range(1, config.pseudo_folds + 1)
    pseudo_lists = [ctx.pseudo.list_path(config.list_dir, h) for h in folds]
    merged_lists = [config.list_dir / f"train_pseudo_{h}" for h in folds]
    if all(store.exists(p) for p in (*pseudo_lists, *merged_lists)):
        logger.info("Using existing second stage file lists.")
        return 0
    if ctx.dry_run:
        logger.info("[dry-run] would write %d pseudo-label folds", config.pseudo_folds)
        return 0

    _ = ctx.pseudo.generate(store.first_predictions, config.list_dir)
    base = config.list_dir / "train"
    for pseudo_list, merged in zip(pseudo_lists, merged_lists):
        _ = concat_lists(merged, base, pseudo_list)
    logger.info("Prepared file lists for second stage.")
    return 0


def stage2_train(
    ctx: PipelineContext,
    args: Sequence[str] = (),
    indices: Optional[Sequence[int]] = None,
    folds: Optional[Sequence[int]] = None,
) -> int:
    """Train one model per (index, fold) on the pseudo-augmented lists."""
    config = ctx.config
    logger.info("Second training stage.")
    selected, selected_folds, extra_args = _selection(args, 2, indices, folds)
    _warn_out_of_range("Model indices", selected, config.model_count)
    _warn_out_of_range("Folds", selected_folds, config.pseudo_folds)
    items = stage2_train_items(config.model_count, config.pseudo_folds, selected, selected_folds)
    return _run_items(ctx, items, extra_args)


def stage2_predict(ctx: PipelineContext, args: Sequence[str] = ()) -> int:
    """Evaluate every second-stage model and bag the models of both stages."""
    config, store = ctx.config, ctx.store
    logger.info("Computing final predictions.")
    items = stage2_predict_items(config.model_count, config.pseudo_folds)
    status = _run_items(ctx, items, args)
    if status != 0 or ctx.dry_run:
        return status

    logger.info("Bagging final predictions.")
    ctx.aggregator.bag(
        store.prediction_artifacts(),
        config.reference_csv,
        store.final_predictions,
    )
    logger.info("Done. Final predictions are in %s.", store.final_predictions)
    return 0


StageFunction = Callable[..., int]

STAGES: dict[str, StageFunction] = {
    "stage1_prepare": stage1_prepare,
    "stage1_train": stage1_train,
    "stage1_predict": stage1_predict,
    "stage2_prepare": stage2_prepare,
    "stage2_train": stage2_train,
    "stage2_predict": stage2_predict,
}

STAGE_ORDER: tuple[str, ...] = tuple(STAGES)


def run_stage(ctx: PipelineContext, name: str, args: Sequence[str] = (), **selection: object) -> int:
    """Run one stage and return its status.

    Pipeline errors are logged and turned into the status; nothing is
    retried.
    """
    try:
        stage = STAGES[name]
    except KeyError:
        msg = f"Unknown stage '{name}'"
        raise BirdrunError(msg, exit_code=2) from None

    kwargs = {key: value for key, value in selection.items() if value is not None}
    try:
        return stage(ctx, list(args), **kwargs)
    except BirdrunError as e:
        logger.error("%s failed: %s", name, e)
        return e.exit_code


def run_all(ctx: PipelineContext, args: Sequence[str] = ()) -> int:
    """Run all stages in order, stopping at the first nonzero status."""
    logger.info("Running full two-stage train/predict sequence")
    for name in STAGE_ORDER:
        status = run_stage(ctx, name, args)
        if status != 0:
            return status
    return 0
