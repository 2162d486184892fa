# Copyright (c) Syntropy Systems
"""birdrun status command."""
from __future__ import annotations

from typing import Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from birdrun.artifacts import ArtifactStore
from birdrun.config import get_db_path, load_config, require_birdrun_dir
from birdrun.db import get_connection, get_work_items, init_db
from birdrun.errors import BirdrunError
from birdrun.models.work import Stage, WorkItem, WorkItemRecord
from birdrun.scheduler import (
    stage1_predict_items,
    stage1_train_items,
    stage2_predict_items,
    stage2_train_items,
)

console = Console()

STATUS_STYLES = {
    "done": "green",
    "skipped": "green",
    "running": "blue",
    "failed": "red",
}


def status(
    stage: Optional[Stage] = typer.Option(
        None,
        "--stage", "-s",
        help="Only show models of this stage",
    ),
) -> None:
    """Show which models and predictions exist.

    The artifact columns reflect the work directory; the last column is the
    most recent state recorded by birdrun for that item.
    """
    try:
        birdrun_dir = require_birdrun_dir()
        config = load_config(birdrun_dir)
    except BirdrunError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(1) from e

    store = ArtifactStore(config.work_dir)
    db_path = get_db_path(birdrun_dir)
    init_db(db_path)
    conn = get_connection(db_path)
    try:
        records = {r.key: r for r in get_work_items(conn)}
    finally:
        conn.close()

    pairs: list[tuple[WorkItem, WorkItem]] = []
    if stage in (None, Stage.FIRST):
        pairs.extend(zip(
            stage1_train_items(config.model_count),
            stage1_predict_items(config.model_count),
        ))
    if stage in (None, Stage.SECOND):
        pairs.extend(zip(
            stage2_train_items(config.model_count, config.pseudo_folds),
            stage2_predict_items(config.model_count, config.pseudo_folds),
        ))

    table = Table(show_header=True, header_style="bold")
    table.add_column("Model", no_wrap=True)
    table.add_column("Stage")
    table.add_column("Fold", style="dim")
    table.add_column("Trained")
    table.add_column("Predicted")
    table.add_column("Last state")

    for train_item, eval_item in pairs:
        model_path = store.model_path(train_item)
        table.add_row(
            model_path.stem,
            train_item.stage.value,
            str(train_item.fold_index) if train_item.fold_index is not None else "-",
            _presence(store.exists(model_path)),
            _presence(store.exists(store.prediction_path(eval_item))),
            _last_state(records.get(eval_item.key) or records.get(train_item.key)),
        )

    console.print(table)
    for bagged in (store.first_predictions, store.final_predictions):
        console.print(f"  [dim]{bagged.name}:[/dim] {_presence(store.exists(bagged))}")


def _presence(present: bool) -> str:
    return "[green]yes[/green]" if present else "[dim]no[/dim]"


def _last_state(record: WorkItemRecord | None) -> str:
    if record is None:
        return "-"
    style = STATUS_STYLES.get(record.status, "white")
    text = f"{record.operation} [{style}]{record.status}[/{style}]"
    if record.exit_code:
        text += f" ({record.exit_code})"
    return text
