"""
histrecord.py - Zsh EXTENDED_HISTORY records: loading, parsing and merging.

Record format
-------------
Every entry is a logical line of the form ": <epoch>:<duration>;command". The
epoch has at least 10 digits. A command that spans several physical lines ends
each inner line with a trailing backslash, so one record may cover many lines
of the file.

Pipeline pieces
---------------
1. ``load_history``        bytes -> text, invalid UTF-8 replaced byte by byte with '#'.
2. ``join_continuations``  physical lines -> logical lines, continuation breaks
                           replaced by a run-unique placeholder.
3. ``is_well_formed``      record grammar check.
4. ``parse_record``        logical line -> ``Record``.
5. ``MergeTable``          one record per distinct command, latest timestamp wins.

Continuation ambiguity
----------------------
A trailing backslash is only a continuation if the next physical line does not
itself look like the start of a record. A command that really ends in a
backslash and is followed by a record will therefore keep its backslash, and a
continued line that happens to start with ": <10+ digits>:" is split off as a
new record. The format cannot tell these apart.
"""

from __future__ import annotations

import codecs
import re
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable, Iterator

# ============================================================================
# CONSTANTS & PATTERNS
# ============================================================================

# Full record grammar, used to validate logical lines.
HISTORY_ENTRY_RE = re.compile(r"^: [0-9]{10,}:[0-9]+;")
# Looser shape used to decide whether a physical line opens a new record.
RECORD_START_RE = re.compile(r"^:\s*[0-9]{10,}:")
METADATA_RE = re.compile(r": ([0-9]+):([0-9]+)")

CONTINUATION = "\\\n"
ENCODING_MARKER = "#"
TIMESTAMP_WIDTH = 10


def _replace_with_marker(exc: UnicodeError) -> tuple[str, int]:
    # Resume right after the first bad byte so each invalid byte gets its own marker.
    if isinstance(exc, UnicodeDecodeError):
        return ENCODING_MARKER, exc.start + 1
    raise exc


ENCODING_ERRORS = "histmerge-marker"
codecs.register_error(ENCODING_ERRORS, _replace_with_marker)


# ============================================================================
# ERRORS
# ============================================================================


class HistMergeError(Exception):
    """Base class for every fatal merge error."""


class FileAccessError(HistMergeError):
    """A history file could not be opened or read."""

    def __init__(self, path: Path | str, reason: str):
        self.path = Path(path)
        self.reason = reason
        super().__init__(f"cannot read '{path}': {reason}")


class MalformedRecordError(HistMergeError):
    """One or more logical lines do not follow the record grammar."""

    def __init__(
        self,
        line: str,
        reason: str,
        path: Path | str | None = None,
        lines: Iterable[str] = (),
    ):
        self.line = line
        self.reason = reason
        self.path = Path(path) if path is not None else None
        self.lines = list(lines) or [line]
        super().__init__(self._describe())

    def _describe(self) -> str:
        where = f"'{self.path}': " if self.path is not None else ""
        if len(self.lines) == 1:
            return f"{where}{self.reason}: {self.lines[0]!r}"
        listing = "\n".join(f"  {line!r}" for line in self.lines)
        return f"{where}{len(self.lines)} malformed lines ({self.reason}):\n{listing}"

    def in_file(self, path: Path | str) -> MalformedRecordError:
        """Return a copy of this error attributed to ``path``."""
        return MalformedRecordError(self.line, self.reason, path=path, lines=self.lines)


# ============================================================================
# DATA STRUCTURES
# ============================================================================


@dataclass(frozen=True)
class Record:
    """A single history entry. ``command`` may still hold placeholder tokens."""

    command: str
    executed_at: int
    duration: int


class MergeOutcome(Enum):
    ADDED = "added"
    REPLACED = "replaced"
    KEPT = "kept"


class MergeTable:
    """Command text -> most recent ``Record`` for that command.

    Tie policy is stable-keep: a record only replaces the stored one when its
    timestamp is strictly greater, so on equal timestamps the first record read
    (file order, then line order) survives.

    Iteration order follows arrival of the *retained* record. A replacement
    moves its key to the end, which is what gives ``sorted_records`` its
    tie order for distinct commands sharing a timestamp.
    """

    def __init__(self) -> None:
        self._records: dict[str, Record] = {}

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, command: object) -> bool:
        return command in self._records

    def __iter__(self) -> Iterator[Record]:
        return iter(self._records.values())

    def get(self, command: str) -> Record | None:
        return self._records.get(command)

    def merge(self, record: Record) -> MergeOutcome:
        existing = self._records.get(record.command)
        if existing is None:
            self._records[record.command] = record
            return MergeOutcome.ADDED
        if record.executed_at > existing.executed_at:
            del self._records[record.command]
            self._records[record.command] = record
            return MergeOutcome.REPLACED
        return MergeOutcome.KEPT

    def sorted_records(self) -> list[Record]:
        """All retained records, ascending by timestamp (stable)."""
        return sorted(self._records.values(), key=lambda r: r.executed_at)


# ============================================================================
# LOADING & NORMALIZATION
# ============================================================================


def make_placeholder() -> str:
    """Return a continuation placeholder unique to this run."""
    return f"__HISTMERGE_CONTINUATION_{time.time_ns()}__"


def decode_history(raw: bytes) -> str:
    """Decode UTF-8, replacing each invalid byte with ``ENCODING_MARKER``."""
    return raw.decode("utf-8", errors=ENCODING_ERRORS)


def load_history(path: Path | str) -> str:
    """Read the whole file. Raises ``FileAccessError`` if it cannot be read."""
    path = Path(path)
    try:
        raw = path.read_bytes()
    except OSError as e:
        raise FileAccessError(path, e.strerror or str(e)) from e
    return decode_history(raw)


def join_continuations(text: str, placeholder: str) -> list[str]:
    """Collapse continued physical lines into logical lines.

    A physical line ending in a backslash absorbs the next physical line unless
    that line opens a new record. The backslash and line break are replaced by
    ``placeholder``.
    """
    if not text:
        return []
    if not text.endswith("\n"):
        text += "\n"
    physical = text.split("\n")
    # text ends with "\n", so the last element is always the empty remainder
    physical.pop()
    physical = [line[:-1] if line.endswith("\r") else line for line in physical]

    logical: list[str] = []
    current = ""
    continuing = False
    for i, line in enumerate(physical):
        current += line
        next_line = physical[i + 1] if i + 1 < len(physical) else ""
        continuing = line.endswith("\\") and not RECORD_START_RE.match(next_line)
        if continuing:
            current = current[:-1] + placeholder
            continue
        logical.append(current)
        current = ""
    if continuing:
        logical.append(current)
    return logical


# ============================================================================
# VALIDATION & PARSING
# ============================================================================


def is_well_formed(line: str) -> bool:
    return bool(HISTORY_ENTRY_RE.match(line))


def parse_record(line: str) -> Record:
    """→ Parses a logical line into a ``Record``"""
    metadata, sep, command = line.partition(";")
    if not sep:
        raise MalformedRecordError(line, "missing ';' after record metadata")
    m = METADATA_RE.fullmatch(metadata)
    if not m:
        raise MalformedRecordError(line, "expected ': <timestamp>:<duration>'")
    return Record(command=command, executed_at=int(m.group(1)), duration=int(m.group(2)))


def format_record(record: Record, placeholder: str) -> str:
    """Canonical textual form, without the trailing newline."""
    command = record.command.replace(placeholder, CONTINUATION)
    return f": {record.executed_at:0{TIMESTAMP_WIDTH}d}:{record.duration};{command}"
