from __future__ import annotations

import uuid
from collections.abc import Iterable
from pathlib import Path

import polars as pl

from ctrader_live_feed.core.events import Instrument

SYMBOLS_SCHEMA = {"symbolId": pl.Int64, "symbolName": pl.Utf8}


def instruments_frame(instruments: Iterable[Instrument]) -> pl.DataFrame:
    rows = [(item.symbol_id, item.symbol_name) for item in instruments]
    frame = pl.DataFrame(rows, schema=SYMBOLS_SCHEMA, orient="row")
    return frame.unique(subset=["symbolId"], keep="first", maintain_order=True).sort("symbolName")


def write_symbols_csv(instruments: Iterable[Instrument], path: Path) -> Path:
    frame = instruments_frame(instruments)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.parent / f".{path.name}.{uuid.uuid4().hex}.tmp"
    try:
        frame.write_csv(tmp_path)
        tmp_path.replace(path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
    return path


def read_symbols_csv(path: Path) -> list[Instrument]:
    frame = pl.read_csv(path, schema_overrides=SYMBOLS_SCHEMA)
    return [
        Instrument(symbol_id=row["symbolId"], symbol_name=row["symbolName"])
        for row in frame.iter_rows(named=True)
    ]
