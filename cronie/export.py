"""
Export of execution logs to flat formats.

Supported formats:
    jsonl - one JSON object per line
    json  - a single JSON array (indented)
    csv   - header row plus one row per log, every field quoted

Exports ignore pagination: every row matching the filter is written.
"""

import csv
import io
import json
import logging
from dataclasses import fields, replace
from typing import Any, Dict, List, Optional

from cronie.models import ExecutionLog, LogFilter
from cronie.store import TaskStore

logger = logging.getLogger(__name__)

EXPORT_FORMATS = ('jsonl', 'json', 'csv')
EXPORT_COLUMNS = [f.name for f in fields(ExecutionLog)]


def _export_records(store: TaskStore, filters: Optional[LogFilter]) -> List[Dict[str, Any]]:
    filters = replace(filters, limit=None, offset=0) if filters else LogFilter(limit=None)
    return [log.to_dict() for log in store.query_logs(filters)]


def _to_csv(records: List[Dict[str, Any]]) -> str:
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=EXPORT_COLUMNS, quoting=csv.QUOTE_ALL)
    writer.writeheader()
    for record in records:
        writer.writerow({k: '' if v is None else v for k, v in record.items()})
    return buffer.getvalue()


def export_logs(store: TaskStore, fmt: str = 'jsonl', filters: Optional[LogFilter] = None) -> str:
    """
    Serialize the logs matching filters.

    Args:
        store: Task store to read from
        fmt: One of EXPORT_FORMATS
        filters: Task id / status / search filter (limit and offset ignored)

    Returns:
        The serialized logs

    Raises:
        ValueError: If fmt is not supported
    """
    if fmt not in EXPORT_FORMATS:
        raise ValueError(f"Unsupported export format '{fmt}' (use one of: {', '.join(EXPORT_FORMATS)})")

    records = _export_records(store, filters)
    logger.debug(f"Exporting {len(records)} log(s) as {fmt}")

    if fmt == 'jsonl':
        return ''.join(json.dumps(record) + '\n' for record in records)
    if fmt == 'json':
        return json.dumps(records, indent=2)
    return _to_csv(records)
