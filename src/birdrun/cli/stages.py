# Copyright (c) Syntropy Systems
"""birdrun stage commands.

Tokens that birdrun does not recognise are handed to the stage unchanged,
so learner options can be given directly:

    birdrun stage1_train "1 3" --var learning_rate=0.01
"""
from __future__ import annotations

import logging
from typing import Any, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from birdrun.config import get_db_path, load_config, require_birdrun_dir
from birdrun.db import init_db
from birdrun.errors import BirdrunError
from birdrun.scheduler import parse_index_list
from birdrun.stages import PipelineContext, run_all, run_stage

console = Console()

# Extra tokens are passed through to the learner
STAGE_CONTEXT: dict[str, Any] = {
    "allow_extra_args": True,
    "ignore_unknown_options": True,
}


def setup_logging(verbose: bool = False) -> None:
    """Send pipeline logging to stderr through rich."""
    handler = RichHandler(
        console=Console(stderr=True),
        show_time=False,
        show_path=False,
        markup=False,
    )
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        handlers=[handler],
        force=True,
    )


def exit_status(status: int) -> int:
    """Map a pipeline status to a process exit code.

    Negative statuses mean the learner died from a signal; report them the
    way a shell does.
    """
    if status < 0:
        return 128 - status
    return status


def _run(
    name: Optional[str],
    ctx: typer.Context,
    workers: Optional[int],
    dry_run: bool,
    verbose: bool,
    indices: Optional[str] = None,
    folds: Optional[str] = None,
) -> None:
    setup_logging(verbose)
    try:
        birdrun_dir = require_birdrun_dir()
        config = load_config(birdrun_dir)
        db_path = None
        if not dry_run:
            db_path = get_db_path(birdrun_dir)
            init_db(db_path)
        pipeline = PipelineContext.from_config(
            config,
            db_path=db_path,
            workers=workers,
            dry_run=dry_run,
        )
        args = list(ctx.args)
        if name is None:
            status = run_all(pipeline, args)
        else:
            status = run_stage(
                pipeline,
                name,
                args,
                indices=parse_index_list(indices) if indices is not None else None,
                folds=parse_index_list(folds) if folds is not None else None,
            )
    except BirdrunError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(exit_status(e.exit_code)) from e
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/yellow]")
        raise typer.Exit(130) from None

    if status != 0:
        console.print(f"[red]Failed with status {status}[/red]")
    raise typer.Exit(exit_status(status))


WorkersOption = typer.Option(
    None,
    "--workers", "-j",
    min=1,
    help="Concurrent learner invocations (default: config 'workers')",
)
DryRunOption = typer.Option(
    False,
    "--dry-run", "-n",
    help="Show what would run without invoking anything",
)
VerboseOption = typer.Option(
    False,
    "--verbose", "-v",
    help="Debug logging",
)


def run_all_stages(
    ctx: typer.Context,
    workers: Optional[int] = WorkersOption,
    dry_run: bool = DryRunOption,
    verbose: bool = VerboseOption,
) -> None:
    """Run the full two-stage train/predict sequence.

    Stops at the first failing stage. Extra arguments go to every stage.
    """
    _run(None, ctx, workers, dry_run, verbose)


def stage1_prepare(
    ctx: typer.Context,
    workers: Optional[int] = WorkersOption,
    dry_run: bool = DryRunOption,
    verbose: bool = VerboseOption,
) -> None:
    """Prepare file lists and spectrograms."""
    _run("stage1_prepare", ctx, workers, dry_run, verbose)


def stage1_train(
    ctx: typer.Context,
    indices: Optional[str] = typer.Option(
        None,
        "--indices",
        help="Model indices to train, e.g. '1,3' (default: all)",
    ),
    workers: Optional[int] = WorkersOption,
    dry_run: bool = DryRunOption,
    verbose: bool = VerboseOption,
) -> None:
    """Train the first-stage ensemble.

    A leading argument such as "1 3" selects model indices.
    """
    _run("stage1_train", ctx, workers, dry_run, verbose, indices=indices)


def stage1_predict(
    ctx: typer.Context,
    workers: Optional[int] = WorkersOption,
    dry_run: bool = DryRunOption,
    verbose: bool = VerboseOption,
) -> None:
    """Evaluate first-stage models and bag their predictions."""
    _run("stage1_predict", ctx, workers, dry_run, verbose)


def stage2_prepare(
    ctx: typer.Context,
    workers: Optional[int] = WorkersOption,
    dry_run: bool = DryRunOption,
    verbose: bool = VerboseOption,
) -> None:
    """Write pseudo-label file lists from the first-stage predictions."""
    _run("stage2_prepare", ctx, workers, dry_run, verbose)


def stage2_train(
    ctx: typer.Context,
    indices: Optional[str] = typer.Option(
        None,
        "--indices",
        help="Model indices to train, e.g. '1,3' (default: all)",
    ),
    folds: Optional[str] = typer.Option(
        None,
        "--folds",
        help="Pseudo-label folds to train, e.g. '2' (default: all)",
    ),
    workers: Optional[int] = WorkersOption,
    dry_run: bool = DryRunOption,
    verbose: bool = VerboseOption,
) -> None:
    """Train the second-stage ensemble.

    Leading arguments select model indices and then folds, e.g. "2" "1".
    """
    _run("stage2_train", ctx, workers, dry_run, verbose, indices=indices, folds=folds)


def stage2_predict(
    ctx: typer.Context,
    workers: Optional[int] = WorkersOption,
    dry_run: bool = DryRunOption,
    verbose: bool = VerboseOption,
) -> None:
    """Evaluate second-stage models and bag the final predictions."""
    _run("stage2_predict", ctx, workers, dry_run, verbose)
