# Copyright (c) Syntropy Systems
"""Tests for learner invocations and the process runner."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Callable

import pytest

from birdrun.artifacts import ArtifactStore
from birdrun.config import load_config, parse_config
from birdrun.errors import InvocationError
from birdrun.invokers import (
    MISSING_OUTPUT_STATUS,
    EvaluatorInvoker,
    TrainerInvoker,
    check_command,
    run_command,
)
from birdrun.models.config import PipelineConfig
from birdrun.runner import ProcessRunner


@pytest.fixture
def argv_config(temp_dir: Path) -> PipelineConfig:
    return parse_config(
        {
            "network": "small",
            "networks": {"small": {"width": 128, "layers": "conv:8", "options": ["--batch", "32"]}},
            "commands": {"learner": ["code/simplenn_main.py"]},
        },
        temp_dir,
    )


class TestTrainerArgv:
    """The training command line."""

    def test_full_argv(self, argv_config: PipelineConfig, temp_dir: Path) -> None:
        store = ArtifactStore(argv_config.work_dir)
        trainer = TrainerInvoker(argv_config, store)
        save = temp_dir / "work" / ".model_first_3.partial.h5"

        argv = trainer.build_argv(save, "train", 3, ["--var", "x=1"])

        work = temp_dir / "work"
        assert argv == [
            str(temp_dir / "code" / "simplenn_main.py"),
            "--mode=train",
            "--problem=binary",
            "--var", "measures=",
            "--inputs", "filelist:filelist",
            "--var", f"filelist:path={work / 'filelists'}",
            "--var", "filelist:lists=train",
            "--process", "filelistshuffle:shuffle(seed=3,memory=25000)",
            "--process",
            f"input:{temp_dir / 'code' / 'load_data.py'}(type=spect,downmix=0,cycle=0,"
            "denoise=1,width=128,seed=3)",
            "--var", f"input:labels={temp_dir / 'labels'}/*.csv",
            "--var", f"input:data={work / 'spect'}/%(id)s.h5",
            "--var", "input:data_vars=1k",
            "--process", "collect:collect",
            "--var", "collect:source=0..1",
            "--process", "scale@1:range(out_min=0.01,out_max=0.99)",
            "--layers", "conv:8",
            "--save", str(save),
            "--batch", "32",
            "--var", "x=1",
        ]


class TestEvaluatorArgv:
    """The evaluation command line."""

    def test_bypasses_shuffle_and_augmentation(self, argv_config: PipelineConfig) -> None:
        store = ArtifactStore(argv_config.work_dir)
        evaluator = EvaluatorInvoker(argv_config, store)
        model = argv_config.work_dir / "model_second_1_2.h5"
        save = argv_config.work_dir / ".model_second_1_2.prediction.partial.h5"

        argv = evaluator.build_argv(model, "test", save, ["--extra"])

        assert argv[1] == "--mode=evaluate"
        assert "filelist:lists=test" in argv
        assert "filelistshuffle:bypass=1" in argv
        assert "augment:bypass=1" in argv
        assert argv[argv.index("--load") + 1] == str(model)
        assert argv[argv.index("--save") + 1] == str(save)
        assert argv[-1] == "--extra"
        # Network options are training-only
        assert "--batch" not in argv


class TestInvocation:
    """Running the fake learner end to end."""

    def test_train_publishes_model(
        self,
        birdrun_project: Path,
        learner_calls: Callable[[], list[dict[str, Any]]],
    ) -> None:
        config = load_config()
        config.work_dir.mkdir()
        store = ArtifactStore(config.work_dir)

        status = TrainerInvoker(config, store).train(config.work_dir / "model_first_1", "train", 1)

        assert status == 0
        assert (config.work_dir / "model_first_1.h5").read_text().startswith("model trained")
        assert not store.staging_path(config.work_dir / "model_first_1.h5").exists()
        assert store.log_path("model_first_1.h5").exists()
        assert learner_calls()[0]["mode"] == "train"

    def test_failure_status_and_no_artifact(
        self,
        birdrun_project: Path,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setenv("FAKE_FAIL_ON", "model_first_1")
        monkeypatch.setenv("FAKE_FAIL_STATUS", "5")
        config = load_config()
        config.work_dir.mkdir()
        store = ArtifactStore(config.work_dir)

        status = TrainerInvoker(config, store).train(config.work_dir / "model_first_1", "train", 1)

        assert status == 5
        assert not (config.work_dir / "model_first_1.h5").exists()
        assert "failing on purpose" in store.log_path("model_first_1.h5").read_text()

    def test_zero_status_without_output(
        self,
        birdrun_project: Path,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setenv("FAKE_NO_OUTPUT", "1")
        config = load_config()
        config.work_dir.mkdir()
        store = ArtifactStore(config.work_dir)

        status = TrainerInvoker(config, store).train(config.work_dir / "model_first_1", "train", 1)

        assert status == MISSING_OUTPUT_STATUS
        assert not (config.work_dir / "model_first_1.h5").exists()

    def test_evaluate_writes_prediction(self, birdrun_project: Path) -> None:
        config = load_config()
        config.list_dir.mkdir(parents=True)
        (config.list_dir / "test").write_text("test/e1.wav\ntest/e3.wav\n")
        (config.work_dir / "model_first_1.h5").write_text("model")
        store = ArtifactStore(config.work_dir)

        status = EvaluatorInvoker(config, store).evaluate(
            config.work_dir / "model_first_1",
            "test",
            config.work_dir / "model_first_1.prediction",
        )

        assert status == 0
        prediction = config.work_dir / "model_first_1.prediction.h5"
        assert prediction.read_text() == "id,score\ne1,0.9\ne3,0.2\n"


class TestCommands:
    """Tests for helper command execution."""

    def test_unstartable_command(self, temp_dir: Path) -> None:
        config = parse_config({"commands": {"learner": ["learn"]}}, temp_dir)
        log = temp_dir / "logs" / "missing.log"

        status = run_command(config, [str(temp_dir / "does-not-exist")], log)

        assert status == 127
        assert "cannot start" in log.read_text()

    def test_check_command_raises(self, temp_dir: Path) -> None:
        config = parse_config({"commands": {"learner": ["learn"]}}, temp_dir)

        with pytest.raises(InvocationError) as exc:
            check_command(
                config,
                [sys.executable, "-c", "import sys; sys.exit(9)"],
                temp_dir / "logs" / "fail.log",
            )
        assert exc.value.exit_code == 9
        assert exc.value.status == 9

    def test_stdout_redirect(self, temp_dir: Path) -> None:
        config = parse_config({"commands": {"learner": ["learn"]}}, temp_dir)
        out = temp_dir / "out.txt"

        check_command(
            config,
            [sys.executable, "-c", "import sys; print('hello'); print('oops', file=sys.stderr)"],
            temp_dir / "logs" / "echo.log",
            stdout_path=out,
        )

        assert out.read_text() == "hello\n"
        assert "oops" in (temp_dir / "logs" / "echo.log").read_text()


class TestProcessRunner:
    """Tests for the process runner."""

    def test_kill_terminates_process(self, temp_dir: Path) -> None:
        runner = ProcessRunner(
            [sys.executable, "-c", "import time; time.sleep(30)"],
            log_path=temp_dir / "sleep.log",
        )
        runner.start()
        assert runner.pid is not None

        code = runner.kill(grace_period=1.0)

        assert code != 0
        assert runner.exit_code is not None
