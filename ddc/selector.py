"""Choosing which job profiles to download from queries.json history."""

import gzip
import io
import json
import logging
import zlib
from typing import Callable, Dict, Iterable, List
from .fs import FileSystem
from .models import DiagnosticRecord, SelectionQuota

logger = logging.getLogger(__name__)


def parse_record(line: str) -> DiagnosticRecord:
    """Build a record from one queries.json line.

    Raises:
        ValueError: the line is not a JSON object with a queryId
    """
    data = json.loads(line)
    if not isinstance(data, dict) or not data.get("queryId"):
        raise ValueError("missing queryId")
    return DiagnosticRecord(
        id=str(data["queryId"]),
        planning_time=float(data.get("planningTime") or 0),
        execution_time=float(data.get("runningTime") or data.get("executionTime") or 0),
        query_cost=float(data.get("queryCost") or 0),
        is_error=data.get("outcome") == "FAILED",
        start=int(data.get("start") or 0),
    )


def load_records(fs: FileSystem, paths: Iterable[str]) -> List[DiagnosticRecord]:
    """Read every parseable record from the given queries.json files.

    Files ending in .gz are decompressed. Unreadable files and bad lines are
    skipped.
    """
    records = []
    for path in paths:
        try:
            with fs.open(path) as raw:
                data = raw.read()
            if path.endswith(".gz"):
                data = gzip.decompress(data)
        except (OSError, EOFError, zlib.error) as e:
            logger.warning("skipping unreadable queries file %s: %s", path, e)
            continue
        for lineno, line in enumerate(io.StringIO(data.decode("utf-8", errors="replace")), start=1):
            line = line.strip()
            if not line:
                continue
            try:
                records.append(parse_record(line))
            except (ValueError, TypeError) as e:
                logger.debug("skipping %s:%d: %s", path, lineno, e)
    logger.info("loaded %d query records from queries.json", len(records))
    return records


def _top(records: Iterable[DiagnosticRecord], n: int, key: Callable[[DiagnosticRecord], float]) -> List[DiagnosticRecord]:
    if n <= 0:
        return []
    return sorted(records, key=lambda r: (-key(r), r.id))[:n]


def slow_planning(records: Iterable[DiagnosticRecord], n: int) -> List[DiagnosticRecord]:
    return _top(records, n, lambda r: r.planning_time)


def slow_exec(records: Iterable[DiagnosticRecord], n: int) -> List[DiagnosticRecord]:
    return _top(records, n, lambda r: r.execution_time)


def high_cost(records: Iterable[DiagnosticRecord], n: int) -> List[DiagnosticRecord]:
    return _top(records, n, lambda r: r.query_cost)


def recent_errors(records: Iterable[DiagnosticRecord], n: int) -> List[DiagnosticRecord]:
    return _top((r for r in records if r.is_error), n, lambda r: r.start)


def select_records(records: List[DiagnosticRecord], quota: SelectionQuota) -> List[str]:
    """Ids to download, each at most once, in the order first selected."""
    selected: Dict[str, None] = {}
    buckets = [
        ("slow planning", slow_planning(records, quota.slow_planning)),
        ("slow execution", slow_exec(records, quota.slow_exec)),
        ("high query cost", high_cost(records, quota.high_cost)),
        ("recent errors", recent_errors(records, quota.recent_errors)),
    ]
    for name, bucket in buckets:
        logger.info("selected %d %s profiles", len(bucket), name)
        for record in bucket:
            selected.setdefault(record.id, None)
    return list(selected)
