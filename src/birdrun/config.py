# Copyright (c) Syntropy Systems
"""Configuration management for birdrun."""
from __future__ import annotations

from pathlib import Path
from typing import cast

import yaml
from pydantic import ValidationError

from birdrun.errors import ConfigError
from birdrun.models.config import PipelineConfig

# Written by `birdrun init`; mirrors the fields of PipelineConfig
DEFAULT_CONFIG: dict[str, object] = {
    "network": "default",
    "networks": {
        "default": {
            "width": 256,
            "layers": "",
            "options": [],
        },
    },
    "work_path": "work",
    "label_path": "labels",
    "audio_path": "audio",
    "train": ["train"],
    "test": "test",
    "model_count": 5,
    "pseudo_threshold": 0.5,
    "pseudo_folds": 2,
    "pseudo_policy": "ge",
    "pseudo_seed": 0,
    "pseudo_suffix": ".wav",
    "workers": 1,
    "kill_grace_period": 10,
    "commands": {
        "learner": ["code/simplenn_main.py"],
        "loader": "code/load_data.py",
        "filelists": ["code/create_filelists.py"],
        "spectrograms": ["code/prepare_spectrograms.sh"],
        "bagging": ["code/predict.py"],
    },
}


def find_birdrun_dir(start_path: Path | None = None) -> Path | None:
    """Find the nearest .birdrun directory by walking up from start_path.

    Returns None if no .birdrun directory is found.
    """
    if start_path is None:
        start_path = Path.cwd()

    current = start_path.resolve()

    while current != current.parent:
        birdrun_dir = current / ".birdrun"
        if birdrun_dir.is_dir():
            return birdrun_dir
        current = current.parent

    # Check root
    birdrun_dir = current / ".birdrun"
    if birdrun_dir.is_dir():
        return birdrun_dir

    return None


def require_birdrun_dir() -> Path:
    """Get birdrun directory or raise an error if not found."""
    birdrun_dir = find_birdrun_dir()
    if birdrun_dir is None:
        msg = "No .birdrun directory found. Run 'birdrun init' first."
        raise ConfigError(msg)
    return birdrun_dir


def get_config_path(birdrun_dir: Path) -> Path:
    """Get the path to the pipeline configuration file."""
    return birdrun_dir / "config.yaml"


def get_db_path(birdrun_dir: Path | None = None) -> Path:
    """Get the path to the work-item state database."""
    if birdrun_dir is None:
        birdrun_dir = require_birdrun_dir()
    return birdrun_dir / "birdrun.db"


def parse_config(data: dict[str, object], project_dir: Path) -> PipelineConfig:
    """Validate a raw configuration mapping.

    Raises ConfigError with every validation problem on one line each.
    """
    try:
        return PipelineConfig.model_validate({**data, "project_dir": project_dir})
    except ValidationError as e:
        problems = []
        for error in e.errors():
            location = ".".join(str(p) for p in error["loc"]) or "(root)"
            problems.append(f"{location}: {error['msg']}")
        msg = "Invalid configuration:\n  " + "\n  ".join(problems)
        raise ConfigError(msg) from e


def load_config(birdrun_dir: Path | None = None) -> PipelineConfig:
    """Load .birdrun/config.yaml of the nearest project.

    Relative paths in the file are resolved against the project directory,
    the parent of the .birdrun directory.
    """
    if birdrun_dir is None:
        birdrun_dir = require_birdrun_dir()

    config_path = get_config_path(birdrun_dir)
    if not config_path.exists():
        msg = f"Configuration file not found: {config_path}"
        raise ConfigError(msg)

    try:
        with config_path.open() as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        msg = f"Cannot read {config_path}: {e}"
        raise ConfigError(msg) from e

    if not isinstance(data, dict):
        msg = f"{config_path} must contain a mapping"
        raise ConfigError(msg)

    return parse_config(cast("dict[str, object]", data), birdrun_dir.parent.resolve())
