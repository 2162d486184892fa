# Copyright (c) Syntropy Systems
"""birdrun init command."""

from pathlib import Path

import typer
import yaml
from rich.console import Console

from birdrun.config import DEFAULT_CONFIG
from birdrun.db import init_db

console = Console()


def init(
    path: Path = typer.Argument(
        Path(),
        help="Project directory to initialize (default: current directory)",
    ),
) -> None:
    """Initialize a new birdrun project.

    Creates a .birdrun directory with a default configuration and the
    work-item database.
    """
    target = path.resolve()
    birdrun_dir = target / ".birdrun"

    if birdrun_dir.exists():
        console.print(f"[yellow]Already initialized:[/yellow] {birdrun_dir}")
        return

    birdrun_dir.mkdir(parents=True)

    config_path = birdrun_dir / "config.yaml"
    with config_path.open("w") as f:
        yaml.safe_dump(DEFAULT_CONFIG, f, default_flow_style=False, sort_keys=False)

    db_path = birdrun_dir / "birdrun.db"
    init_db(db_path)

    console.print(f"[green]Initialized birdrun project:[/green] {birdrun_dir}")
    console.print(f"  [dim]config:[/dim] {config_path}")
    console.print(f"  [dim]database:[/dim] {db_path}")
    console.print("  Edit [bold]commands.learner[/bold] before running stages.")
