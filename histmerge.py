#!/usr/bin/env uv run
# /// script
# requires-python = ">=3.10"
# dependencies = ["rich"]
# ///
"""
Merge zsh history files, keeping the latest run of every command.

Behavior
- Reads the given files in ascending lexical order of their path string.
- Joins multi-line entries (trailing backslash continuations) into one record.
- Deduplicates by exact command text across all files, keeping the record with
  the greatest timestamp. On equal timestamps the first one read wins.
- Writes the merged records to stdout, ascending by timestamp, in the same
  ": <epoch>:<duration>;command" format. Continuations are restored verbatim.
- Prints one progress line per file to stderr, and per-file stats with --stats.

Errors
- An unreadable file is fatal: nothing is written to stdout and the exit status is 1.
- Lines that do not follow the record grammar are skipped, or are fatal with
  --strict. --collect-errors reports every failing file before exiting instead
  of stopping at the first one.
- Invalid UTF-8 bytes are replaced with '#' and processing continues.

Usage
    uv run histmerge.py zsh_history_*.bak ~/.zsh_history > merged_zsh_history
"""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable, TextIO

from rich import box
from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.theme import Theme

from histrecord import (
    CONTINUATION,
    HistMergeError,
    MalformedRecordError,
    MergeOutcome,
    MergeTable,
    Record,
    format_record,
    is_well_formed,
    join_continuations,
    load_history,
    make_placeholder,
    parse_record,
)

# ============================================================================
# CONFIGURATION & CONSTANTS
# ============================================================================

CUSTOM_THEME = Theme({
    "info": "#61AFEF",
    "success": "#98C379",
    "warning": "#E5C07B",
    "error": "#E06C75",
    "context": "#5C6370",
})

console = Console(stderr=True, theme=CUSTOM_THEME, emoji=False)


class ValidationPolicy(Enum):
    LENIENT = "lenient"  # malformed lines are skipped
    STRICT = "strict"  # malformed lines abort the run


class ErrorPolicy(Enum):
    ABORT = "abort"  # stop at the first failing file
    COLLECT = "collect"  # process every file, then report all failures


@dataclass
class MergeConfig:
    """Configuration for a merge run"""

    validation: ValidationPolicy = ValidationPolicy.LENIENT
    errors: ErrorPolicy = ErrorPolicy.ABORT
    show_stats: bool = False


# ============================================================================
# DATA STRUCTURES
# ============================================================================


@dataclass
class FileStats:
    path: Path
    logical_lines: int = 0
    parsed: int = 0
    skipped: int = 0
    added: int = 0
    replaced: int = 0
    cumulative: int = 0


class MergeFailed(HistMergeError):
    """Raised once the run has failed; carries every error gathered."""

    def __init__(self, errors: list[HistMergeError]):
        self.errors = errors
        super().__init__("\n".join(str(e) for e in errors))


# ============================================================================
# MERGING
# ============================================================================


def merge_lines(
    lines: Iterable[str],
    table: MergeTable,
    stats: FileStats,
    validation: ValidationPolicy = ValidationPolicy.LENIENT,
    placeholder: str | None = None,
) -> None:
    """Validate, parse and merge logical lines into ``table``.

    Under STRICT, every offending line is gathered first and reported in a single
    ``MalformedRecordError``; the table is left untouched in that case.
    """
    records: list[Record] = []
    malformed: list[str] = []
    for line in lines:
        if not line:
            continue
        stats.logical_lines += 1
        if not is_well_formed(line):
            malformed.append(line.replace(placeholder, CONTINUATION) if placeholder else line)
            continue
        records.append(parse_record(line))

    stats.skipped = len(malformed)
    if malformed and validation is ValidationPolicy.STRICT:
        raise MalformedRecordError(
            malformed[0], "does not match ': <timestamp>:<duration>;<command>'", lines=malformed
        )

    for record in records:
        stats.parsed += 1
        outcome = table.merge(record)
        if outcome is MergeOutcome.ADDED:
            stats.added += 1
        elif outcome is MergeOutcome.REPLACED:
            stats.replaced += 1
    stats.cumulative = len(table)


class MergeSession:
    """One merge run: a placeholder token, a merge table and per-file stats.

    Nothing here is shared between sessions, so several runs (or tests) can
    coexist in one process.
    """

    def __init__(self, config: MergeConfig | None = None, placeholder: str | None = None):
        self.config = config or MergeConfig()
        self.placeholder = placeholder or make_placeholder()
        self.table = MergeTable()
        self.stats: list[FileStats] = []

    def process_file(self, path: Path | str) -> FileStats:
        """Load one history file and merge its records into the session table."""
        path = Path(path)
        console.print(f"Parsing '{escape(str(path))}'", highlight=False, soft_wrap=True)
        text = load_history(path)
        stats = FileStats(path=path)
        try:
            merge_lines(
                join_continuations(text, self.placeholder),
                self.table,
                stats,
                self.config.validation,
                self.placeholder,
            )
        except MalformedRecordError as e:
            raise e.in_file(path) from e
        self.stats.append(stats)
        return stats

    def process_files(self, paths: Iterable[Path | str]) -> None:
        """Process ``paths`` in lexical order of their string form.

        Raises ``MergeFailed`` if any file fails. Under ErrorPolicy.ABORT it
        raises on the first failure; under COLLECT it keeps going first.
        """
        self.process_ordered(sorted(paths, key=str))

    def process_ordered(self, paths: Iterable[Path | str]) -> None:
        """Process ``paths`` in the order given; same error handling as ``process_files``."""
        errors: list[HistMergeError] = []
        for path in paths:
            try:
                self.process_file(path)
            except HistMergeError as e:
                errors.append(e)
                if self.config.errors is ErrorPolicy.ABORT:
                    break
        if errors:
            raise MergeFailed(errors)

    def merged_lines(self) -> Iterable[str]:
        for record in self.table.sorted_records():
            yield format_record(record, self.placeholder)


# ============================================================================
# OUTPUT
# ============================================================================


def emit(lines: Iterable[str], out: TextIO) -> None:
    """Write the merged records. A closed downstream pipe ends output quietly."""
    try:
        for line in lines:
            out.write(line + "\n")
        out.flush()
    except BrokenPipeError:
        # Downstream consumer closed early (e.g., piped to `head`).
        try:
            out.flush()
        except BrokenPipeError:
            pass


def render_stats(session: MergeSession) -> Table:
    """Render per-file stats and the union summary as a Rich table."""
    table = Table(
        title="Merge Statistics",
        box=box.ROUNDED,
        show_header=True,
        header_style="bold",
    )
    table.add_column("File", style="dim", max_width=45)
    table.add_column("Lines", justify="right")
    table.add_column("Parsed", justify="right")
    table.add_column("Skipped", justify="right")
    table.add_column("New", justify="right", style="success")
    table.add_column("Replaced", justify="right", style="info")
    table.add_column("Union", justify="right")

    for s in session.stats:
        table.add_row(
            escape(s.path.name),
            f"{s.logical_lines:,}",
            f"{s.parsed:,}",
            f"[warning]{s.skipped:,}[/warning]" if s.skipped else "0",
            f"{s.added:,}",
            f"{s.replaced:,}",
            f"{s.cumulative:,}",
        )

    total_parsed = sum(s.parsed for s in session.stats)
    unique = len(session.table)
    table.add_section()
    table.add_row(
        f"[bold]{len(session.stats)} files[/bold]",
        f"{sum(s.logical_lines for s in session.stats):,}",
        f"{total_parsed:,}",
        f"{sum(s.skipped for s in session.stats):,}",
        "",
        "",
        f"[bold]{unique:,}[/bold]",
    )
    if total_parsed:
        table.caption = (
            f"duplicates_removed={total_parsed - unique:,}  "
            f"unique_ratio={unique / total_parsed * 100.0:.2f}%"
        )
    return table


def report_failure(failure: MergeFailed) -> None:
    for error in failure.errors:
        console.print(f"[error]Error: {escape(str(error))}[/error]", highlight=False, soft_wrap=True)
    console.print("[error]Aborted: no output written.[/error]")


# ============================================================================
# MAIN
# ============================================================================


def build_config(args: argparse.Namespace) -> MergeConfig:
    return MergeConfig(
        validation=ValidationPolicy.STRICT if args.strict else ValidationPolicy.LENIENT,
        errors=ErrorPolicy.COLLECT if args.collect_errors else ErrorPolicy.ABORT,
        show_stats=args.stats,
    )


def main(argv: list[str] | None = None) -> int:
    ap = argparse.ArgumentParser(
        description="Merge zsh history files; emit deduplicated union to stdout; progress to stderr",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    ap.add_argument("files", nargs="+", help="History files to merge (processed in lexical order)")
    ap.add_argument(
        "--strict",
        action="store_true",
        help="Abort on lines that are not valid history records instead of skipping them",
    )
    ap.add_argument(
        "--collect-errors",
        action="store_true",
        help="Process every file and report all errors, rather than stopping at the first",
    )
    ap.add_argument(
        "--stats",
        action="store_true",
        help="Print per-file and union statistics to stderr",
    )
    args = ap.parse_args(argv)

    session = MergeSession(build_config(args))
    # order by the path strings as given, expand afterwards
    paths = [os.path.expanduser(p) for p in sorted(args.files)]
    try:
        session.process_ordered(paths)
    except MergeFailed as failure:
        report_failure(failure)
        return 1

    if session.config.show_stats:
        console.print(render_stats(session))

    emit(session.merged_lines(), sys.stdout)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
