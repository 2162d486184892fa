# Copyright (c) Syntropy Systems
"""Bagging: merge per-model predictions into one ensemble estimate.

With ``commands.bagging`` configured, an external tool does the merging.
Otherwise predictions are read as ``id,score`` text tables and averaged
here. Either way the output is a CSV keyed by the identifiers of the
reference label CSV, one row each.
"""
from __future__ import annotations

import csv
import io
import logging
import math
from collections import defaultdict
from typing import TYPE_CHECKING

from birdrun.artifacts import ArtifactStore, atomic_write_text
from birdrun.errors import MissingInputError
from birdrun.invokers import check_command

if TYPE_CHECKING:
    from collections.abc import Sequence
    from pathlib import Path

    from birdrun.models.config import PipelineConfig

logger = logging.getLogger(__name__)


def _parse_score(value: str) -> float | None:
    try:
        score = float(value)
    except ValueError:
        return None
    if math.isnan(score):
        return None
    return score


def read_reference(path: Path, header: bool = True) -> tuple[list[str], list[str]]:
    """Read identifiers (first column) of a label CSV.

    Returns (header_row, identifiers). The header row is empty when
    `header` is False.
    """
    if not path.is_file():
        msg = f"Reference file list not found: {path}"
        raise MissingInputError(msg)
    with path.open(newline="") as f:
        rows = [row for row in csv.reader(f) if row]
    header_row: list[str] = []
    if header and rows:
        header_row = rows.pop(0)
    # Duplicates collapse so each identifier is bagged exactly once
    return header_row, list(dict.fromkeys(row[0].strip() for row in rows))


def read_prediction_table(path: Path) -> dict[str, float]:
    """Read an ``id,score`` prediction table.

    A first row whose score is not numeric is taken as a header. Any later
    malformed row makes the whole file unreadable.
    """
    try:
        text = path.read_text()
    except (OSError, UnicodeDecodeError) as e:
        msg = f"Cannot read prediction file {path}: {e}"
        raise MissingInputError(msg) from e

    scores: dict[str, float] = {}
    for line_no, row in enumerate(csv.reader(io.StringIO(text)), start=1):
        if not row:
            continue
        score = _parse_score(row[-1]) if len(row) >= 2 else None  # noqa: PLR2004
        if score is None:
            if line_no == 1:
                continue
            msg = f"Malformed prediction row {line_no} in {path}: {row!r}"
            raise MissingInputError(msg)
        scores[row[0].strip()] = score
    return scores


def bag_scores(tables: Sequence[dict[str, float]], identifiers: Sequence[str]) -> list[float | None]:
    """Mean score per identifier across tables; None if no table scored it.

    math.fsum is exactly rounded, so the result does not depend on the
    order of `tables`.
    """
    collected: dict[str, list[float]] = defaultdict(list)
    for table in tables:
        for key, score in table.items():
            collected[key].append(score)
    result: list[float | None] = []
    for key in identifiers:
        values = collected.get(key)
        result.append(math.fsum(values) / len(values) if values else None)
    return result


def format_bagged_csv(
    identifiers: Sequence[str],
    scores: Sequence[float | None],
    header: Sequence[str] | None = None,
) -> str:
    """Render bagged scores as CSV text."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    if header:
        writer.writerow(header)
    for key, score in zip(identifiers, scores):
        writer.writerow([key, "" if score is None else f"{score:.6f}"])
    return buffer.getvalue()


def read_bagged_csv(path: Path, header: bool = True) -> list[tuple[str, float | None]]:
    """Read a bagged prediction CSV back as (identifier, score) pairs."""
    if not path.is_file():
        msg = f"Bagged predictions not found: {path}"
        raise MissingInputError(msg)
    with path.open(newline="") as f:
        rows = [row for row in csv.reader(f) if row]
    if header and rows:
        rows.pop(0)
    return [
        (row[0].strip(), _parse_score(row[-1]) if len(row) >= 2 else None)  # noqa: PLR2004
        for row in rows
    ]


class BaggingAggregator:
    """Merges a set of prediction artifacts into one bagged CSV."""

    config: PipelineConfig
    store: ArtifactStore

    def __init__(self, config: PipelineConfig, store: ArtifactStore) -> None:
        self.config = config
        self.store = store

    def bag(
        self,
        predictions: Sequence[Path],
        reference: Path,
        out: Path,
        reference_header: bool = True,
        out_header: bool = True,
    ) -> None:
        """Bag `predictions` against the identifiers of `reference` into `out`."""
        if not predictions:
            msg = f"No prediction files to bag for {out.name}"
            raise MissingInputError(msg)

        # Sorted so repeated runs invoke the same command
        inputs = sorted(predictions)
        logger.debug("Bagging %d prediction file(s) into %s", len(inputs), out)
        command = self.config.commands.bagging
        if command:
            self._bag_external(command, inputs, reference, out, reference_header, out_header)
        else:
            self._bag_builtin(inputs, reference, out, reference_header, out_header)

    def _bag_external(
        self,
        command: tuple[str, ...],
        inputs: Sequence[Path],
        reference: Path,
        out: Path,
        reference_header: bool,
        out_header: bool,
    ) -> None:
        config = self.config
        staging = self.store.staging_path(out)
        argv = [
            *config.resolve_command(command),
            *(str(p) for p in inputs),
            "--filelist", str(reference),
        ]
        if reference_header:
            argv.append("--filelist-header")
        argv.extend(["--out", str(staging)])
        if out_header:
            argv.append("--out-header")

        self.store.discard(staging)
        check_command(config, argv, self.store.log_path(out.name))
        if not self.store.publish(staging, out, overwrite=True):
            msg = f"Bagging command wrote no output for {out.name}"
            raise MissingInputError(msg)

    def _bag_builtin(
        self,
        inputs: Sequence[Path],
        reference: Path,
        out: Path,
        reference_header: bool,
        out_header: bool,
    ) -> None:
        header_row, identifiers = read_reference(reference, header=reference_header)
        tables = [read_prediction_table(path) for path in inputs]
        scores = bag_scores(tables, identifiers)

        missing = sum(1 for s in scores if s is None)
        if missing:
            logger.warning("%d of %d identifiers have no score in any model", missing, len(scores))

        header: list[str] | None = None
        if out_header:
            if len(header_row) >= 2:  # noqa: PLR2004
                header = [header_row[0], header_row[-1]]
            else:
                header = [header_row[0] if header_row else "id", "score"]
        atomic_write_text(out, format_bagged_csv(identifiers, scores, header))
