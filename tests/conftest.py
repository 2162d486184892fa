# Copyright (c) Syntropy Systems
"""Pytest fixtures for birdrun tests."""

from __future__ import annotations

import json
import os
import sqlite3
import sys
import tempfile
from collections.abc import Callable, Generator
from pathlib import Path
from typing import Any

import pytest
import yaml

# Store original cwd at module load time
_original_cwd = Path.cwd()

# Stand-in for the learner. Train mode writes the --save file, evaluate mode
# writes an id,score table for the requested file list using scores.json.
# Every call is appended to calls.jsonl in the project directory.
FAKE_LEARNER = r'''
import json
import os
import sys
import time
from pathlib import Path

args = sys.argv[1:]
mode = save = load = None
variables = {}
extra = []
i = 0
while i < len(args):
    arg = args[i]
    if arg.startswith("--mode="):
        mode = arg.split("=", 1)[1]
    elif arg == "--var":
        key, _, value = args[i + 1].partition("=")
        variables[key] = value
        i += 1
    elif arg in ("--save", "--load", "--inputs", "--process", "--layers"):
        if arg == "--save":
            save = args[i + 1]
        elif arg == "--load":
            load = args[i + 1]
        i += 1
    else:
        extra.append(arg)
    i += 1

name = Path(save).name.lstrip(".").replace(".partial", "")
with open("calls.jsonl", "a") as f:
    f.write(json.dumps({
        "mode": mode,
        "name": name,
        "save": save,
        "load": load,
        "lists": variables.get("filelist:lists"),
        "extra": extra,
        "argv": args,
    }) + "\n")

for target in filter(None, os.environ.get("FAKE_FAIL_ON", "").split(",")):
    if name.startswith(target + "."):
        print("failing on purpose", file=sys.stderr)
        sys.exit(int(os.environ.get("FAKE_FAIL_STATUS", "3")))

time.sleep(float(os.environ.get("FAKE_SLEEP", "0")))

if os.environ.get("FAKE_NO_OUTPUT"):
    sys.exit(0)

if mode == "train":
    Path(save).write_text("model trained on " + variables["filelist:lists"] + "\n")
elif mode == "evaluate":
    if not Path(load).is_file():
        print("no model " + load, file=sys.stderr)
        sys.exit(2)
    scores = json.loads(Path("scores.json").read_text())
    listing = Path(variables["filelist:path"]) / variables["filelist:lists"]
    rows = ["id,score"]
    for line in listing.read_text().splitlines():
        if line.strip():
            key = Path(line.strip()).stem
            rows.append(key + "," + str(scores.get(key, 0.5)))
    Path(save).write_text("\n".join(rows) + "\n")
else:
    sys.exit(64)
'''

# Prints "<part>/<id>.wav" for every row of labels/<part>.csv
FAKE_FILELISTS = r'''
import csv
import sys
from pathlib import Path

label_dir = Path(sys.argv[1])
for part in sys.argv[2:]:
    with (label_dir / (part + ".csv")).open(newline="") as f:
        rows = list(csv.reader(f))[1:]
    for row in rows:
        if row:
            print(part + "/" + row[0] + ".wav")
'''

FAKE_SPECTROGRAMS = "import os, sys; os.makedirs(sys.argv[2], exist_ok=True)"

TRAIN_IDS = ["t1", "t2", "t3", "t4"]
TEST_SCORES = {
    "e1": 0.9,
    "e2": 0.8,
    "e3": 0.2,
    "e4": 0.7,
    "e5": 0.1,
    "e6": 0.95,
}


def project_config(**overrides: Any) -> dict[str, Any]:
    """Configuration for the fake project.

    Top-level keys are replaced; `commands` entries are merged.
    """
    config: dict[str, Any] = {
        "network": "default",
        "networks": {"default": {"width": 64, "layers": "conv:4", "options": []}},
        "work_path": "work",
        "label_path": "labels",
        "audio_path": "audio",
        "train": ["train"],
        "test": "test",
        "model_count": 2,
        "pseudo_threshold": 0.5,
        "pseudo_folds": 2,
        "pseudo_seed": 0,
        "workers": 1,
        "kill_grace_period": 1,
        "commands": {
            "learner": [sys.executable, "code/fake_learner.py"],
            "filelists": [sys.executable, "code/fake_filelists.py"],
            "spectrograms": [sys.executable, "-c", FAKE_SPECTROGRAMS],
            # The fake learner writes id,score tables
            "bagging": None,
        },
    }
    config["commands"].update(overrides.pop("commands", {}))
    config.update(overrides)
    return config


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def birdrun_project(temp_dir: Path) -> Generator[Path, None, None]:
    """Create a birdrun project wired to the fake external commands."""
    from birdrun.db import init_db

    birdrun_dir = temp_dir / ".birdrun"
    birdrun_dir.mkdir()
    with (birdrun_dir / "config.yaml").open("w") as f:
        yaml.safe_dump(project_config(), f)
    init_db(birdrun_dir / "birdrun.db")

    code = temp_dir / "code"
    code.mkdir()
    (code / "fake_learner.py").write_text(FAKE_LEARNER)
    (code / "fake_filelists.py").write_text(FAKE_FILELISTS)

    labels = temp_dir / "labels"
    labels.mkdir()
    (labels / "train.csv").write_text(
        "itemid,hasbird\n" + "".join(f"{i},1\n" for i in TRAIN_IDS)
    )
    (labels / "test.csv").write_text(
        "itemid,hasbird\n" + "".join(f"{i},0\n" for i in TEST_SCORES)
    )
    (temp_dir / "audio").mkdir()
    (temp_dir / "scores.json").write_text(json.dumps(TEST_SCORES))

    # Change to temp directory
    os.chdir(temp_dir)

    yield temp_dir

    # Always return to original cwd
    os.chdir(_original_cwd)


@pytest.fixture
def write_config(birdrun_project: Path) -> Callable[..., None]:
    """Rewrite the project configuration with top-level overrides."""

    def _write(**overrides: Any) -> None:
        with (birdrun_project / ".birdrun" / "config.yaml").open("w") as f:
            yaml.safe_dump(project_config(**overrides), f)

    return _write


@pytest.fixture
def learner_calls(birdrun_project: Path) -> Callable[[], list[dict[str, Any]]]:
    """Read back the invocations recorded by the fake learner."""

    def _calls() -> list[dict[str, Any]]:
        path = birdrun_project / "calls.jsonl"
        if not path.exists():
            return []
        return [json.loads(line) for line in path.read_text().splitlines() if line]

    return _calls


@pytest.fixture
def db_connection(birdrun_project: Path) -> Generator[sqlite3.Connection, None, None]:
    """Get a database connection for the test project."""
    from birdrun.db import get_connection

    db_path = birdrun_project / ".birdrun" / "birdrun.db"
    conn = get_connection(db_path)
    yield conn
    conn.close()
