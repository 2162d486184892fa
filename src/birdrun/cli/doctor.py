# Copyright (c) Syntropy Systems
"""birdrun doctor command."""

import os
import shutil
import sqlite3
import subprocess
from pathlib import Path
from typing import cast

from rich.console import Console

from birdrun.config import find_birdrun_dir, get_db_path, load_config
from birdrun.db import get_connection
from birdrun.errors import ConfigError

console = Console()


def _check_program(label: str, argv: tuple[str, ...], resolved: list[str]) -> str | None:
    """Return a problem description, or None if the program looks runnable."""
    program = resolved[0]
    if "/" in argv[0]:
        path = Path(program)
        if not path.is_file():
            return f"{label} not found: {program}"
        if not os.access(path, os.X_OK):
            return f"{label} is not executable: {program}"
        return None
    if shutil.which(program) is None:
        return f"{label} not on PATH: {program}"
    return None


def doctor() -> None:
    """Check the birdrun setup and diagnose issues.

    Verifies:
    - birdrun directory and configuration
    - external commands
    - label and audio directories
    - SQLite database health
    - GPU availability
    """
    issues: list[str] = []
    warnings: list[str] = []

    birdrun_dir = find_birdrun_dir()
    if birdrun_dir is None:
        console.print("[red]✗[/red] No .birdrun directory found")
        console.print("  Run [bold]birdrun init[/bold] to initialize a project")
        return

    console.print(f"[green]✓[/green] birdrun directory: {birdrun_dir}")

    try:
        config = load_config(birdrun_dir)
    except ConfigError as e:
        console.print(f"[red]✗[/red] {e}")
        issues.append("Invalid configuration")
        config = None

    if config is not None:
        console.print(
            f"[green]✓[/green] Config: network {config.network}, "
            f"{config.model_count} models, {config.pseudo_folds} folds"
        )

        commands = config.commands
        checks = [
            ("Learner", commands.learner),
            ("File list command", commands.filelists),
            ("Spectrogram command", commands.spectrograms),
        ]
        if commands.bagging:
            checks.append(("Bagging command", commands.bagging))
        for label, argv in checks:
            problem = _check_program(label, argv, config.resolve_command(argv))
            if problem is None:
                console.print(f"[green]✓[/green] {label}: {argv[0]}")
            else:
                console.print(f"[red]✗[/red] {problem}")
                issues.append(problem)
        if not commands.bagging:
            console.print("[dim]•[/dim] Bagging: built-in mean over id,score tables")

        for label, path in (("Labels", config.label_dir), ("Audio", config.audio_dir)):
            if path.is_dir():
                console.print(f"[green]✓[/green] {label}: {path}")
            else:
                console.print(f"[yellow]⚠[/yellow] {label} directory not found: {path}")
                warnings.append(f"{label} directory missing")

        if not config.reference_csv.is_file():
            console.print(
                f"[yellow]⚠[/yellow] Reference labels not found: {config.reference_csv}"
            )
            warnings.append("Reference label CSV missing")

    db_path = get_db_path(birdrun_dir)
    if not db_path.exists():
        console.print(f"[yellow]⚠[/yellow] Database not found: {db_path}")
        warnings.append("Database missing (created on first run)")
    else:
        conn = None
        try:
            conn = get_connection(db_path)
            result = cast(
                "sqlite3.Row | None",
                conn.execute("PRAGMA journal_mode").fetchone(),
            )
            if result is not None and cast("str", result[0]).lower() == "wal":
                console.print("[green]✓[/green] SQLite: WAL mode enabled")
            else:
                journal_mode = (
                    cast("str", result[0]) if result is not None else "unknown"
                )
                console.print(
                    f"[yellow]⚠[/yellow] SQLite: journal_mode is {journal_mode}, expected WAL"
                )
                warnings.append("Not using WAL mode")
        except sqlite3.Error as e:
            console.print(f"[red]✗[/red] Database error: {e}")
            issues.append(f"Database error: {e}")
        finally:
            if conn is not None:
                conn.close()

    nvidia_smi = shutil.which("nvidia-smi")
    if nvidia_smi:
        try:
            proc = subprocess.run(  # noqa: S603
                [
                    nvidia_smi,
                    "--query-gpu=name,memory.total",
                    "--format=csv,noheader",
                ],
                capture_output=True,
                text=True,
                timeout=5,
                check=False,
            )
            if proc.returncode == 0:
                gpus = proc.stdout.strip().split("\n")
                for i, gpu in enumerate(gpus):
                    console.print(f"[green]✓[/green] GPU {i}: {gpu.strip()}")
            else:
                console.print("[yellow]⚠[/yellow] nvidia-smi failed")
                warnings.append("nvidia-smi failed")
        except subprocess.TimeoutExpired:
            console.print("[yellow]⚠[/yellow] nvidia-smi timed out")
            warnings.append("nvidia-smi timed out")
        except OSError as e:
            console.print(f"[yellow]⚠[/yellow] GPU check failed: {e}")
            warnings.append(f"GPU check failed: {e}")
    else:
        console.print("[dim]•[/dim] No GPU detected (nvidia-smi not found)")

    cuda_devices = os.environ.get("CUDA_VISIBLE_DEVICES")
    if cuda_devices:
        console.print(f"[dim]•[/dim] CUDA_VISIBLE_DEVICES={cuda_devices}")

    console.print()
    if issues:
        console.print(f"[red]Found {len(issues)} issue(s)[/red]")
        for issue in issues:
            console.print(f"  - {issue}")
    elif warnings:
        console.print(f"[yellow]Found {len(warnings)} warning(s)[/yellow]")
        for warning in warnings:
            console.print(f"  - {warning}")
    else:
        console.print("[green]All checks passed[/green]")
