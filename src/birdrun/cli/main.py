# Copyright (c) Syntropy Systems
"""Main CLI entry point for birdrun."""
from __future__ import annotations

import sys
from typing import Optional

import typer

from birdrun.cli.doctor import doctor
from birdrun.cli.init_cmd import init
from birdrun.cli.stages import (
    STAGE_CONTEXT,
    run_all_stages,
    stage1_predict,
    stage1_prepare,
    stage1_train,
    stage2_predict,
    stage2_prepare,
    stage2_train,
)
from birdrun.cli.status import status
from birdrun.scheduler import is_flag

HELP_TOKENS = ("help", "-help", "--help")

app = typer.Typer(
    name="birdrun",
    help=(
        "Two-stage semi-supervised ensemble training for bird audio detection. "
        "Without a command, the full train/predict sequence is run."
    ),
    add_completion=False,
)

# Register commands
_ = app.command()(init)
_ = app.command()(status)
_ = app.command()(doctor)
_ = app.command(name="all", context_settings=STAGE_CONTEXT)(run_all_stages)
_ = app.command(name="stage1_prepare", context_settings=STAGE_CONTEXT)(stage1_prepare)
_ = app.command(name="stage1_train", context_settings=STAGE_CONTEXT)(stage1_train)
_ = app.command(name="stage1_predict", context_settings=STAGE_CONTEXT)(stage1_predict)
_ = app.command(name="stage2_prepare", context_settings=STAGE_CONTEXT)(stage2_prepare)
_ = app.command(name="stage2_train", context_settings=STAGE_CONTEXT)(stage2_train)
_ = app.command(name="stage2_predict", context_settings=STAGE_CONTEXT)(stage2_predict)


def normalize_argv(argv: list[str]) -> list[str]:
    """Rewrite the command line into a form the typer app understands.

    ``help`` and ``-help`` mean ``--help``. No arguments, or a leading
    flag, mean the full run.
    """
    if argv and argv[0] in HELP_TOKENS:
        return ["--help"]
    if not argv or is_flag(argv[0]):
        return ["all", *argv]
    return argv


def main(argv: Optional[list[str]] = None) -> None:
    """Console script entry point."""
    args = sys.argv[1:] if argv is None else argv
    app(args=normalize_argv(list(args)), prog_name="birdrun")


if __name__ == "__main__":
    main()
