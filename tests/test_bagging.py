# Copyright (c) Syntropy Systems
"""Tests for prediction bagging."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

from birdrun.artifacts import ArtifactStore
from birdrun.bagging import (
    BaggingAggregator,
    bag_scores,
    read_bagged_csv,
    read_prediction_table,
    read_reference,
)
from birdrun.config import parse_config
from birdrun.errors import InvocationError, MissingInputError
from birdrun.models.config import PipelineConfig

# Writes its argv, one token per line, to the path after --out
ECHO_BAGGER = (
    "import sys; args = sys.argv[1:]; "
    "open(args[args.index('--out') + 1], 'w').write('\\n'.join(args))"
)


def write(path: Path, text: str) -> Path:
    path.write_text(text)
    return path


@pytest.fixture
def reference(temp_dir: Path) -> Path:
    return write(temp_dir / "test.csv", "itemid,hasbird\na,0\nb,1\nc,0\n")


def aggregator(temp_dir: Path, bagging: object = None) -> tuple[BaggingAggregator, PipelineConfig]:
    config = parse_config(
        {"commands": {"learner": ["learn"], "bagging": bagging}},
        temp_dir,
    )
    config.work_dir.mkdir(exist_ok=True)
    return BaggingAggregator(config, ArtifactStore(config.work_dir)), config


class TestReaders:
    """Tests for prediction and reference readers."""

    def test_prediction_with_header(self, temp_dir: Path) -> None:
        path = write(temp_dir / "p.h5", "id,score\na,0.25\nb,1\n")

        assert read_prediction_table(path) == {"a": 0.25, "b": 1.0}

    def test_prediction_without_header(self, temp_dir: Path) -> None:
        path = write(temp_dir / "p.h5", "a,0.5\n\nb,0.75\n")

        assert read_prediction_table(path) == {"a": 0.5, "b": 0.75}

    def test_malformed_prediction(self, temp_dir: Path) -> None:
        path = write(temp_dir / "p.h5", "id,score\na,0.5\nb,high\n")

        with pytest.raises(MissingInputError, match="Malformed"):
            _ = read_prediction_table(path)

    def test_binary_prediction_is_unreadable(self, temp_dir: Path) -> None:
        path = temp_dir / "p.h5"
        path.write_bytes(b"\x89HDF\r\n\x1a\n\xff\xfe\x00")

        with pytest.raises(MissingInputError):
            _ = read_prediction_table(path)

    def test_reference_deduplicates(self, temp_dir: Path) -> None:
        path = write(temp_dir / "ref.csv", "itemid,hasbird\nb,1\na,0\nb,1\n")

        header, identifiers = read_reference(path)

        assert header == ["itemid", "hasbird"]
        assert identifiers == ["b", "a"]

    def test_reference_missing(self, temp_dir: Path) -> None:
        with pytest.raises(MissingInputError, match="Reference"):
            _ = read_reference(temp_dir / "nope.csv")


class TestBagScores:
    """Tests for the averaging itself."""

    def test_mean(self) -> None:
        scores = bag_scores([{"a": 0.2, "b": 1.0}, {"a": 0.4}], ["a", "b", "c"])

        assert scores[0] == pytest.approx(0.3)
        assert scores[1] == 1.0
        assert scores[2] is None

    def test_order_independent(self) -> None:
        tables = [
            {"a": 0.1, "b": 0.7},
            {"a": 0.2, "b": 0.3},
            {"a": 0.7, "b": 0.9},
        ]

        forward = bag_scores(tables, ["a", "b"])
        backward = bag_scores(list(reversed(tables)), ["a", "b"])

        assert forward == backward


class TestBuiltinAggregator:
    """Bagging without an external command."""

    def test_writes_one_row_per_reference_id(self, temp_dir: Path, reference: Path) -> None:
        bagger, config = aggregator(temp_dir)
        p1 = write(config.work_dir / "model_first_1.prediction.h5", "id,score\na,0.2\nb,0.8\n")
        p2 = write(config.work_dir / "model_first_2.prediction.h5", "id,score\na,0.4\nb,0.6\n")
        out = config.work_dir / "prediction_first.csv"

        bagger.bag([p2, p1], reference, out)

        assert out.read_text() == "itemid,hasbird\na,0.300000\nb,0.700000\nc,\n"
        assert read_bagged_csv(out) == [("a", pytest.approx(0.3)), ("b", pytest.approx(0.7)), ("c", None)]

    def test_input_order_does_not_matter(self, temp_dir: Path, reference: Path) -> None:
        bagger, config = aggregator(temp_dir)
        paths = [
            write(config.work_dir / f"model_first_{i}.prediction.h5", f"a,{s}\nb,{1 - s}\nc,0.5\n")
            for i, s in enumerate((0.1, 0.35, 0.9), start=1)
        ]
        out1 = config.work_dir / "one.csv"
        out2 = config.work_dir / "two.csv"

        bagger.bag(paths, reference, out1)
        bagger.bag(list(reversed(paths)), reference, out2)

        assert out1.read_text() == out2.read_text()

    def test_rebagging_replaces_output(self, temp_dir: Path, reference: Path) -> None:
        bagger, config = aggregator(temp_dir)
        out = write(config.work_dir / "prediction_first.csv", "stale\n")
        p1 = write(config.work_dir / "model_first_1.prediction.h5", "a,1\nb,1\nc,1\n")

        bagger.bag([p1], reference, out)

        assert "stale" not in out.read_text()

    def test_empty_input(self, temp_dir: Path, reference: Path) -> None:
        bagger, config = aggregator(temp_dir)

        with pytest.raises(MissingInputError, match="No prediction files"):
            bagger.bag([], reference, config.work_dir / "out.csv")
        assert not (config.work_dir / "out.csv").exists()


class TestExternalAggregator:
    """Bagging through commands.bagging."""

    def test_command_line(self, temp_dir: Path, reference: Path) -> None:
        bagger, config = aggregator(temp_dir, [sys.executable, "-c", ECHO_BAGGER])
        p2 = write(config.work_dir / "model_first_2.prediction.h5", "")
        p1 = write(config.work_dir / "model_first_1.prediction.h5", "")
        out = config.work_dir / "prediction_first.csv"

        bagger.bag([p2, p1], reference, out)

        staging = ArtifactStore.staging_path(out)
        assert out.read_text().split("\n") == [
            str(p1),
            str(p2),
            "--filelist", str(reference),
            "--filelist-header",
            "--out", str(staging),
            "--out-header",
        ]
        assert not staging.exists()

    def test_failure_raises(self, temp_dir: Path, reference: Path) -> None:
        bagger, config = aggregator(temp_dir, [sys.executable, "-c", "import sys; sys.exit(4)"])
        p1 = write(config.work_dir / "model_first_1.prediction.h5", "")

        with pytest.raises(InvocationError) as exc:
            bagger.bag([p1], reference, config.work_dir / "prediction_first.csv")
        assert exc.value.exit_code == 4

    def test_default_config_hands_hdf5_to_script(self, temp_dir: Path, reference: Path) -> None:
        config = parse_config({"commands": {"learner": ["learn"]}}, temp_dir)
        config.work_dir.mkdir(exist_ok=True)
        script = temp_dir / "code" / "predict.py"
        script.parent.mkdir()
        _ = write(script, f"#!{sys.executable}\n{ECHO_BAGGER}\n")
        script.chmod(0o755)
        hdf5 = b"\x89HDF\r\n\x1a\n"
        p1 = config.work_dir / "model_first_1.prediction.h5"
        p2 = config.work_dir / "model_first_2.prediction.h5"
        _ = p1.write_bytes(hdf5)
        _ = p2.write_bytes(hdf5)
        out = config.work_dir / "prediction_first.csv"

        BaggingAggregator(config, ArtifactStore(config.work_dir)).bag([p1, p2], reference, out)

        assert out.read_text().split("\n")[:2] == [str(p1), str(p2)]
