#!/usr/bin/env python3
# -*- coding: utf-8 -*-
#
# Rating histograms per speed category from large PGN streams (Lichess exports).
#
# Usage:
#   python rating_histograms.py lichess_db_standard_rated_2013-01.pgn.zst
#   zstdcat dump.pgn.zst | python rating_histograms.py
#
# Output (current directory):
# - <category>.data: "value,count" rows, ascending value, empty bins omitted.
# - stdout: one "<category>: total, mean, stddev" line per category, then skipped/casual counters.
# - stderr: skip diagnostics and periodic progress.
#
# Notes:
# - Only headers are read; movetext is skipped by python-chess without being parsed.
# - A rating above the histogram maximum aborts the run (exit status 1), as does any I/O failure.

from __future__ import annotations

import argparse
import functools
import io
import sys
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional, TextIO

import chess.pgn
import zstandard as zstd

from rating_pools import (
    CategorySummary,
    CategoryTable,
    GameAggregator,
    GameRecord,
    HistogramRangeError,
    export_bins,
    summarize,
)


# ----------------------------
# Constants
# ----------------------------

PROGRESS_EVERY_S = 60.0

NO_GAMES = "No games"


# ----------------------------
# PGN input (headers only)
# ----------------------------

class RatingVisitor(chess.pgn.BaseVisitor[GameRecord]):
    """Feeds header tags into a GameAggregator and skips the movetext."""

    def __init__(self, aggregator: GameAggregator) -> None:
        self.aggregator = aggregator
        self.record: Optional[GameRecord] = None

    def begin_game(self) -> None:
        self.aggregator.begin_record()

    def visit_header(self, tagname: str, tagvalue: str) -> None:
        self.aggregator.on_header(tagname, tagvalue)

    def end_headers(self) -> chess.pgn.SkipType:
        # Nothing downstream depends on moves.
        self.record = self.aggregator.end_record()
        return chess.pgn.SKIP

    def result(self) -> GameRecord:
        if self.record is None:
            raise RuntimeError("result() before end_headers()")
        return self.record


def iter_records(stream: TextIO, aggregator: GameAggregator) -> Iterator[GameRecord]:
    """Yield one committed/skipped GameRecord per game until the stream is exhausted."""
    visitor = functools.partial(RatingVisitor, aggregator)
    while True:
        record = chess.pgn.read_game(stream, Visitor=visitor)
        if record is None:
            return
        yield record


@contextmanager
def open_pgn(path: str) -> Iterator[TextIO]:
    if path == "-":
        # Decode piped input like files: bad bytes are replaced, not fatal.
        stdin = sys.stdin
        if isinstance(stdin, io.TextIOWrapper):
            stdin.reconfigure(errors="replace")
        yield stdin
        return

    if path.endswith(".zst"):
        with open(path, "rb") as fh:
            dctx = zstd.ZstdDecompressor()
            with dctx.stream_reader(fh) as reader:
                yield io.TextIOWrapper(reader, encoding="utf-8", errors="replace")
        return

    with open(path, "r", encoding="utf-8", errors="replace") as fh:
        yield fh


# ----------------------------
# Output
# ----------------------------

def fmt_int(n: int) -> str:
    return f"{n:,}".replace(",", " ")


def fmt_stat(v: Optional[float]) -> str:
    return NO_GAMES if v is None else f"{v:.2f}"


def format_summary_line(cs: CategorySummary) -> str:
    return f"{cs.name}: total {cs.total_count}, mean {fmt_stat(cs.mean)}, stddev {fmt_stat(cs.stddev)}"


def data_path_for(name: str, out_dir: Path) -> Path:
    return out_dir / f"{name}.data"


def write_data(table: CategoryTable, out_dir: Path) -> List[Path]:
    """Write one <category>.data file per category (empty categories get an empty file)."""
    paths: List[Path] = []
    for c in table.categories():
        out_path = data_path_for(c.name, out_dir)
        lines = [f"{value},{count}" for value, count in export_bins(table.histogram_for(c))]

        tmp = out_path.with_suffix(out_path.suffix + ".tmp")
        tmp.write_text("".join(line + "\n" for line in lines), encoding="utf-8")
        tmp.replace(out_path)
        paths.append(out_path)
    return paths


# ----------------------------
# Run
# ----------------------------

def process_stream(
    stream: TextIO,
    aggregator: GameAggregator,
    log_every: float = PROGRESS_EVERY_S,
) -> None:
    s = aggregator.summary
    t0 = time.time()
    last_log = t0

    def dump_progress(now: float) -> None:
        print(
            "progress: "
            f"elapsed={(now - t0)/60:.1f}m "
            f"games_seen={fmt_int(s.games_seen)} ratings={fmt_int(s.ratings_committed)} "
            f"skipped={fmt_int(s.skipped_count)} casual={fmt_int(s.casual_count)}",
            file=sys.stderr,
            flush=True,
        )

    for _ in iter_records(stream, aggregator):
        now = time.time()
        if log_every > 0 and (now - last_log) >= log_every:
            dump_progress(now)
            last_log = now


def report(aggregator: GameAggregator, out_dir: Path) -> None:
    for cs in summarize(aggregator.table):
        print(format_summary_line(cs))
    write_data(aggregator.table, out_dir)
    s = aggregator.summary
    print(f"skipped={s.skipped_count} casual={s.casual_count}")


# ----------------------------
# CLI
# ----------------------------

def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    ap = argparse.ArgumentParser(
        description="Rating histograms per speed category (ultrabullet..classical) from a PGN stream."
    )
    ap.add_argument(
        "pgn",
        nargs="?",
        default="-",
        help="Input PGN file (.pgn or .pgn.zst). '-' or omitted reads stdin.",
    )
    return ap.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    print(f"input: {args.pgn}", file=sys.stderr, flush=True)

    aggregator = GameAggregator()
    out_dir = Path(".")

    try:
        with open_pgn(args.pgn) as stream:
            process_stream(stream, aggregator)
        report(aggregator, out_dir)
    except HistogramRangeError as e:
        print(f"ERROR: {e}", file=sys.stderr, flush=True)
        return 1
    except OSError as e:
        print(f"ERROR: {e}", file=sys.stderr, flush=True)
        return 1

    s = aggregator.summary
    print(
        f"done: games_seen={fmt_int(s.games_seen)} ratings={fmt_int(s.ratings_committed)} out={out_dir.resolve()}",
        file=sys.stderr,
        flush=True,
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
