"""CSV trace logging using Polars."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List

import polars as pl

LOG_DIR = Path("logs")


def log_records(name: str, records: List[Dict[str, Any]]) -> Path:
    """Append rows to ``logs/<name>.csv``, creating the directory on demand.

    Rows written by earlier runs may carry a different set of columns; the
    union is kept and missing cells are null.

    Args:
        name: Base filename without extension.
        records: List of dict rows.
    Returns:
        Path to the CSV file.
    """
    assert isinstance(name, str) and len(name) > 0, "Invalid log name"
    assert isinstance(records, list), "records must be a list"
    out = LOG_DIR / f"{name}.csv"
    if not records:
        return out
    LOG_DIR.mkdir(exist_ok=True)
    df = pl.DataFrame(records)
    if out.exists():
        prev = pl.read_csv(out)
        df = _align_and_concat(prev, df)
    df.write_csv(out)
    return out


def log_record(name: str, record: Dict[str, Any]) -> Path:
    """Append a single row."""
    return log_records(name, [record])


def _align_and_concat(prev: pl.DataFrame, new: pl.DataFrame) -> pl.DataFrame:
    columns = list(prev.columns) + [c for c in new.columns if c not in prev.columns]
    target: Dict[str, Any] = {}
    for c in columns:
        dt_prev = prev.schema.get(c)
        dt_new = new.schema.get(c)
        if dt_prev is None or dt_new is None:
            target[c] = dt_prev if dt_new is None else dt_new
        elif dt_prev == dt_new:
            target[c] = dt_prev
        elif dt_prev == pl.Utf8 or dt_new == pl.Utf8:
            target[c] = pl.Utf8
        else:
            target[c] = pl.Float64

    def conform(frame: pl.DataFrame) -> pl.DataFrame:
        for c in columns:
            if c not in frame.columns:
                frame = frame.with_columns(pl.lit(None, dtype=target[c]).alias(c))
            elif frame.schema[c] != target[c]:
                frame = frame.with_columns(pl.col(c).cast(target[c]))
        return frame.select(columns)

    return pl.concat([conform(prev), conform(new)], how="vertical")
