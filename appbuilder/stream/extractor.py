"""Extraction of `<file path="...">...</file>` blocks from streamed model output.

Two entry points share one scanner:

- `extract_files()` rescans the whole buffer on every call. It is idempotent:
  the caller passes the per-path count of occurrences it has already consumed
  and only occurrences beyond that count are returned.
- `FileExtractor` keeps a cursor after the last completed block so each call
  only rescans the unterminated tail. Both produce the same final file map.

A path may legitimately appear more than once (the model rewrites a file it
already emitted); every later occurrence replaces the earlier one and is
flagged as an edit. The first `</file>` after an open tag always closes it, so
content cannot contain a literal closing tag.
"""

import logging
import re
import time
from collections import Counter
from dataclasses import dataclass, field

from appbuilder.errors import ExtractionAnomaly
from appbuilder.models import FileRecord, file_type_for


logger = logging.getLogger("appbuilder.stream.extractor")


OPEN_TAG = re.compile(r'<file path="([^"]+)">')
CLOSE_TAG = "</file>"
PACKAGE_TAG = re.compile(r"<package>([^<]*)</package>")
PACKAGES_TAG = re.compile(r"<packages>([^<]*)</packages>")


@dataclass
class _Occurrence:
    path: str
    content: str
    start: int
    end: int


@dataclass
class ExtractionResult:
    completed: list[FileRecord] = field(default_factory=list)
    partial: FileRecord | None = None
    anomalies: list[ExtractionAnomaly] = field(default_factory=list)


def _scan(
    buffer: str, start: int
) -> tuple[list[_Occurrence], tuple[str, str] | None, list[ExtractionAnomaly], int]:
    """Scan `buffer` from `start`.

    Returns completed occurrences, the trailing unterminated (path, body) if
    any, anomalies, and the offset just past the last completed close tag.
    """
    occurrences: list[_Occurrence] = []
    anomalies: list[ExtractionAnomaly] = []
    partial: tuple[str, str] | None = None
    pos = start
    cursor = start

    while True:
        m = OPEN_TAG.search(buffer, pos)
        gap_end = m.start() if m else len(buffer)
        stray = buffer.find(CLOSE_TAG, pos, gap_end)
        if stray != -1:
            anomalies.append(
                ExtractionAnomaly("closing tag without an open file", offset=stray)
            )
        if m is None:
            break

        path = m.group(1).strip()
        body_start = m.end()
        close = buffer.find(CLOSE_TAG, body_start)
        if close == -1:
            partial = (path, buffer[body_start:])
            break

        body = buffer[body_start:close]
        nested = OPEN_TAG.search(body)
        if nested:
            anomalies.append(
                ExtractionAnomaly(
                    f"file {path!r} contains another open tag before its close",
                    offset=body_start + nested.start(),
                    details={"path": path, "nested": nested.group(1)},
                )
            )
        if not path:
            anomalies.append(ExtractionAnomaly("file tag with empty path", offset=m.start()))
        else:
            occurrences.append(
                _Occurrence(path=path, content=body, start=m.start(), end=close + len(CLOSE_TAG))
            )
        pos = close + len(CLOSE_TAG)
        cursor = pos

    return occurrences, partial, anomalies, cursor


def _record(occ: _Occurrence, edited: bool) -> FileRecord:
    return FileRecord(
        path=occ.path,
        content=occ.content.strip(),
        type=file_type_for(occ.path),
        completed=True,
        edited=edited,
        last_updated_at=time.time(),
    )


def _partial_record(partial: tuple[str, str] | None) -> FileRecord | None:
    if partial is None:
        return None
    path, body = partial
    return FileRecord(
        path=path,
        content=body,
        type=file_type_for(path),
        completed=False,
        last_updated_at=time.time(),
    )


def _log_anomalies(anomalies: list[ExtractionAnomaly]) -> None:
    for a in anomalies:
        logger.warning("extraction anomaly at offset %d: %s", a.offset, a.message)


def extract_files(buffer: str, already_processed: dict[str, int]) -> ExtractionResult:
    """Rescan the whole buffer and return files not yet consumed.

    `already_processed` maps a path to the number of its completed occurrences
    already handed out; it is updated in place for every emitted file.
    """
    occurrences, partial, anomalies, _ = _scan(buffer, 0)
    result = ExtractionResult(partial=_partial_record(partial), anomalies=anomalies)
    seen: Counter[str] = Counter()
    for occ in occurrences:
        seen[occ.path] += 1
        if seen[occ.path] <= already_processed.get(occ.path, 0):
            continue
        already_processed[occ.path] = seen[occ.path]
        result.completed.append(_record(occ, edited=seen[occ.path] > 1))
    _log_anomalies(anomalies)
    return result


class FileExtractor:
    """Cursor-based extractor for an append-only buffer.

    Only the text after the last completed close tag is rescanned per call.
    Anomalies are accumulated in `anomalies` across calls.
    """

    def __init__(self) -> None:
        self.cursor = 0
        self.processed: dict[str, int] = {}
        self.anomalies: list[ExtractionAnomaly] = []
        self._reported: set[int] = set()

    def feed(self, buffer: str) -> ExtractionResult:
        if len(buffer) < self.cursor:
            raise ValueError("buffer shrank below the extraction cursor")
        occurrences, partial, anomalies, cursor = _scan(buffer, self.cursor)
        self.cursor = cursor

        # The tail is rescanned until it completes; report each anomaly once.
        fresh = [a for a in anomalies if a.offset not in self._reported]
        self._reported.update(a.offset for a in fresh)
        self.anomalies.extend(fresh)
        _log_anomalies(fresh)

        result = ExtractionResult(partial=_partial_record(partial), anomalies=fresh)
        for occ in occurrences:
            count = self.processed.get(occ.path, 0) + 1
            self.processed[occ.path] = count
            result.completed.append(_record(occ, edited=count > 1))
        return result


def extract_packages(text: str) -> list[str]:
    """Collect package names from `<package>` and `<packages>` tags, in order."""
    found: list[str] = []
    for m in PACKAGE_TAG.finditer(text):
        name = m.group(1).strip()
        if name and name not in found:
            found.append(name)
    for m in PACKAGES_TAG.finditer(text):
        for name in re.split(r"[,\s]+", m.group(1)):
            name = name.strip()
            if name and name not in found:
                found.append(name)
    return found
