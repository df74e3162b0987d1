"""Audit journal: append-only JSONL, fsync per record.

Each journal line is one audit record in canonical JSON:
- Keys sorted deterministically
- UTC timestamps only
- ASCII-safe, no extra whitespace

On write failure raises JournalSyncError. The audit ledger isolates that
error so a failing disk never changes a gate decision.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

AUDIT_INSERT_SQL = """
    INSERT INTO audit_records (
        id, ts_utc, action_type, action_category,
        account_id, account_name, account_address,
        payload, status, passed, denials,
        tx_hash, order_id, fill_price, fill_amount,
        gas_used, gas_cost, source, stage
    ) VALUES (
        $1, $2, $3, $4, $5, $6, $7, $8::jsonb, $9, $10, $11::jsonb,
        $12, $13, $14, $15, $16, $17, $18, $19
    )
    ON CONFLICT (id) DO NOTHING
"""


class JournalSyncError(Exception):
    """Raised when a journal write, fsync or parse fails."""


def canonical_line(record: Dict[str, Any]) -> bytes:
    return (json.dumps(record, sort_keys=True, ensure_ascii=True, separators=(",", ":")) + "\n").encode("utf-8")


class AuditJournal:
    """Append-only journal writer with fsync per record."""

    def __init__(self, path: str) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._fd = None  # type: Optional[int]

    def open(self) -> None:
        self._fd = os.open(
            str(self.path),
            os.O_WRONLY | os.O_CREAT | os.O_APPEND,
            0o640,
        )

    def close(self) -> None:
        if self._fd is not None:
            os.close(self._fd)
            self._fd = None

    @property
    def is_open(self) -> bool:
        return self._fd is not None

    def __enter__(self) -> AuditJournal:
        self.open()
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def write(self, record: Dict[str, Any]) -> None:
        """Append one record and fsync. Raises JournalSyncError on any I/O failure."""
        if self._fd is None:
            raise JournalSyncError("Journal not opened, call open() first")

        line_bytes = canonical_line(record)
        try:
            os.write(self._fd, line_bytes)
            os.fsync(self._fd)
        except OSError as e:
            raise JournalSyncError("Journal fsync failed: {}".format(e)) from e

        logger.debug("Journal record written: id=%s status=%s", record.get("id"), record.get("status"))


class JournalReader:
    """Iterate journal records in file order."""

    def __init__(self, path: str) -> None:
        self.path = Path(path)

    def read_all(self) -> List[Dict[str, Any]]:
        if not self.path.is_file():
            return []

        records = []  # type: List[Dict[str, Any]]
        with open(self.path, "r", encoding="utf-8") as f:
            for line_num, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    records.append(json.loads(line))
                except json.JSONDecodeError as e:
                    logger.error("Journal parse error at line %d: %s", line_num, e)
                    raise JournalSyncError(
                        "Journal corrupted at line {}: {}".format(line_num, e)
                    ) from e
        return records


def audit_row_args(record: Dict[str, Any]) -> List[Any]:
    """Positional arguments for AUDIT_INSERT_SQL from a journal record."""
    account = record.get("account") or {}
    return [
        record["id"],
        datetime.fromisoformat(record["timestamp"]),
        record["actionType"],
        record["actionCategory"],
        account.get("id"),
        account.get("name"),
        account.get("address"),
        json.dumps(record.get("payload") or {}, sort_keys=True),
        record["status"],
        bool(record.get("passed")),
        json.dumps(record.get("denials") or [], sort_keys=True),
        record.get("txHash"),
        record.get("orderId"),
        record.get("fillPrice"),
        record.get("fillAmount"),
        record.get("gasUsed"),
        record.get("gasCost"),
        record.get("source", "user"),
        record.get("stage"),
    ]


async def insert_audit_row(pool: Any, record: Dict[str, Any]) -> bool:
    """Insert one audit row. Returns False when the id already exists."""
    result = await pool.execute(AUDIT_INSERT_SQL, *audit_row_args(record))
    return "INSERT 0 1" in result


async def replay_journal(path: str, pool: Any) -> Dict[str, int]:
    """Load the journal into audit_records, skipping ids already present.

    Raises JournalSyncError if any insert fails.
    """
    records = JournalReader(path).read_all()
    stats = {"inserted": 0, "skipped": 0}
    if not records:
        logger.info("Journal replay: no records to replay")
        return stats

    for rec in records:
        try:
            inserted = await insert_audit_row(pool, rec)
        except Exception as e:
            raise JournalSyncError(
                "Journal replay insert failed for record {}: {}".format(rec.get("id"), e)
            ) from e
        if inserted:
            stats["inserted"] += 1
        else:
            stats["skipped"] += 1

    logger.info(
        "Journal replay complete: inserted=%d skipped=%d",
        stats["inserted"],
        stats["skipped"],
    )
    return stats
