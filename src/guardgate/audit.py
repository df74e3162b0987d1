"""Audit Ledger: append-only record of every decision and execution outcome.

Records are immutable once created. Aggregates (counts, success rate,
volume, denial breakdown) are computed at read time. Persistence to the
journal is isolated: a failed write is logged and counted, never raised
into the caller's decision path.
"""

from __future__ import annotations

import csv
import io
import logging
import threading
import uuid
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from guardgate.constants import (
    AUDIT_ACTION_TYPES,
    AUDIT_CATEGORIES,
    AUDIT_DEFAULT_PAGE_SIZE,
    AUDIT_SOURCES,
    AUDIT_STATUSES,
    AUDIT_SUCCESS_STATUSES,
)
from guardgate.errors import ValidationError
from guardgate.journal import AuditJournal, JournalReader, insert_audit_row

logger = logging.getLogger(__name__)

CSV_COLUMNS = (
    "id",
    "timestamp",
    "actionType",
    "actionCategory",
    "status",
    "passed",
    "accountId",
    "accountName",
    "market",
    "amount",
    "side",
    "txHash",
    "orderId",
    "source",
    "stage",
    "denials",
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _amount(payload: Dict[str, Any]) -> float:
    value = payload.get("amount")
    if value is None:
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


class AuditRecord:
    """One immutable audit entry."""

    __slots__ = (
        "id",
        "timestamp",
        "action_type",
        "action_category",
        "account",
        "payload",
        "status",
        "passed",
        "denials",
        "tx_hash",
        "order_id",
        "fill_price",
        "fill_amount",
        "gas_used",
        "gas_cost",
        "source",
        "stage",
    )

    def __init__(
        self,
        action_type: str,
        action_category: str,
        status: str,
        passed: bool,
        account: Optional[Dict[str, Any]] = None,
        payload: Optional[Dict[str, Any]] = None,
        denials: Iterable[Dict[str, Any]] = (),
        tx_hash: Optional[str] = None,
        order_id: Optional[str] = None,
        fill_price: Optional[float] = None,
        fill_amount: Optional[float] = None,
        gas_used: Optional[str] = None,
        gas_cost: Optional[str] = None,
        source: str = "user",
        stage: Optional[str] = None,
        id: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> None:
        errors = []  # type: List[str]
        if action_type not in AUDIT_ACTION_TYPES:
            errors.append("actionType must be one of {}".format(sorted(AUDIT_ACTION_TYPES)))
        if action_category not in AUDIT_CATEGORIES:
            errors.append("actionCategory must be one of {}".format(sorted(AUDIT_CATEGORIES)))
        if status not in AUDIT_STATUSES:
            errors.append("status must be one of {}".format(list(AUDIT_STATUSES)))
        if source not in AUDIT_SOURCES:
            errors.append("source must be one of {}".format(sorted(AUDIT_SOURCES)))
        if errors:
            raise ValidationError(errors)

        account = account or {}
        values = {
            "id": id or str(uuid.uuid4()),
            "timestamp": timestamp or _utcnow(),
            "action_type": action_type,
            "action_category": action_category,
            "account": {
                "id": account.get("id"),
                "name": account.get("name"),
                "address": account.get("address"),
            },
            "payload": dict(payload or {}),
            "status": status,
            "passed": bool(passed),
            "denials": tuple(d.to_dict() if hasattr(d, "to_dict") else dict(d) for d in denials),
            "tx_hash": tx_hash,
            "order_id": order_id,
            "fill_price": fill_price,
            "fill_amount": fill_amount,
            "gas_used": gas_used,
            "gas_cost": gas_cost,
            "source": source,
            "stage": stage,
        }
        for name, value in values.items():
            object.__setattr__(self, name, value)

    def __setattr__(self, name: str, value: Any) -> None:
        raise AttributeError("AuditRecord is immutable")

    def __delattr__(self, name: str) -> None:
        raise AttributeError("AuditRecord is immutable")

    def __repr__(self) -> str:
        return "AuditRecord(id={}, {} {} {})".format(self.id, self.action_type, self.status, self.timestamp.isoformat())

    @property
    def succeeded(self) -> bool:
        return self.status in AUDIT_SUCCESS_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "actionType": self.action_type,
            "actionCategory": self.action_category,
            "account": dict(self.account),
            "payload": dict(self.payload),
            "status": self.status,
            "passed": self.passed,
            "denials": [dict(d) for d in self.denials],
            "txHash": self.tx_hash,
            "orderId": self.order_id,
            "fillPrice": self.fill_price,
            "fillAmount": self.fill_amount,
            "gasUsed": self.gas_used,
            "gasCost": self.gas_cost,
            "source": self.source,
            "stage": self.stage,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> AuditRecord:
        return cls(
            id=data["id"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            action_type=data["actionType"],
            action_category=data["actionCategory"],
            account=data.get("account"),
            payload=data.get("payload"),
            status=data["status"],
            passed=data.get("passed", False),
            denials=data.get("denials") or (),
            tx_hash=data.get("txHash"),
            order_id=data.get("orderId"),
            fill_price=data.get("fillPrice"),
            fill_amount=data.get("fillAmount"),
            gas_used=data.get("gasUsed"),
            gas_cost=data.get("gasCost"),
            source=data.get("source", "user"),
            stage=data.get("stage"),
        )


class AuditFilter:
    """Query filter. Unset fields match everything."""

    def __init__(
        self,
        statuses: Optional[Iterable[str]] = None,
        action_types: Optional[Iterable[str]] = None,
        category: Optional[str] = None,
        source: Optional[str] = None,
        account_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        search: Optional[str] = None,
        limit: int = AUDIT_DEFAULT_PAGE_SIZE,
        offset: int = 0,
    ) -> None:
        self.statuses = frozenset(statuses) if statuses else None
        self.action_types = frozenset(action_types) if action_types else None
        self.category = category
        self.source = source
        self.account_id = account_id
        self.start = start
        self.end = end
        self.search = search.lower() if search else None
        self.limit = limit
        self.offset = offset

    def matches(self, record: AuditRecord) -> bool:
        if self.statuses is not None and record.status not in self.statuses:
            return False
        if self.action_types is not None and record.action_type not in self.action_types:
            return False
        if self.category is not None and record.action_category != self.category:
            return False
        if self.source is not None and record.source != self.source:
            return False
        if self.account_id is not None and record.account.get("id") != self.account_id:
            return False
        if self.start is not None and record.timestamp < self.start:
            return False
        if self.end is not None and record.timestamp > self.end:
            return False
        if self.search is not None:
            haystack = (
                record.tx_hash,
                record.order_id,
                record.payload.get("market"),
                record.payload.get("description"),
            )
            if not any(h and self.search in str(h).lower() for h in haystack):
                return False
        return True


class AuditPage:
    """One page of query results, newest first."""

    def __init__(self, records: List[AuditRecord], total: int, has_more: bool) -> None:
        self.records = records
        self.total = total
        self.has_more = has_more

    def to_dict(self) -> Dict[str, Any]:
        return {
            "records": [r.to_dict() for r in self.records],
            "total": self.total,
            "hasMore": self.has_more,
        }


class AuditLedger:
    """In-memory append-only ledger, optionally mirrored to a journal."""

    def __init__(
        self,
        journal: Optional[AuditJournal] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._journal = journal
        self._clock = clock or _utcnow
        self._lock = threading.Lock()
        self._records = []  # type: List[AuditRecord]
        self.write_failures = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    @property
    def records(self) -> List[AuditRecord]:
        with self._lock:
            return list(self._records)

    def append(self, record: AuditRecord) -> str:
        """Append a record. Journal failures are logged and counted, never raised."""
        with self._lock:
            self._records.append(record)
            journal = self._journal
            if journal is not None:
                try:
                    if not journal.is_open:
                        journal.open()
                    journal.write(record.to_dict())
                except Exception as e:
                    self.write_failures += 1
                    logger.error("Audit journal write failed for %s: %s", record.id, e)
        logger.debug("Audit appended: id=%s type=%s status=%s", record.id, record.action_type, record.status)
        return record.id

    def record_decision(
        self,
        action_type: str,
        status: str,
        passed: bool,
        account: Optional[Dict[str, Any]] = None,
        payload: Optional[Dict[str, Any]] = None,
        denials: Iterable[Any] = (),
        category: str = "policy",
        source: str = "user",
        tx_hash: Optional[str] = None,
        stage: Optional[str] = None,
        **receipt: Any
    ) -> AuditRecord:
        """Build, timestamp and append one record."""
        record = AuditRecord(
            action_type=action_type,
            action_category=category,
            status=status,
            passed=passed,
            account=account,
            payload=payload,
            denials=denials,
            tx_hash=tx_hash,
            source=source,
            stage=stage,
            timestamp=self._clock(),
            **receipt
        )
        self.append(record)
        return record

    def _matching(self, flt: Optional[AuditFilter]) -> List[AuditRecord]:
        with self._lock:
            records = list(self._records)
        if flt is not None:
            records = [r for r in records if flt.matches(r)]
        records.sort(key=lambda r: r.timestamp, reverse=True)
        return records

    def query(self, flt: Optional[AuditFilter] = None) -> AuditPage:
        flt = flt or AuditFilter()
        matching = self._matching(flt)
        page = matching[flt.offset:flt.offset + flt.limit]
        return AuditPage(page, total=len(matching), has_more=flt.offset + len(page) < len(matching))

    def stats(self, flt: Optional[AuditFilter] = None) -> Dict[str, Any]:
        """Aggregate counts over all records matching the filter (no paging)."""
        records = self._matching(flt)
        now = self._clock()

        by_status = {s: 0 for s in AUDIT_STATUSES}
        by_action_type = {}  # type: Dict[str, int]
        last_24h = 0
        last_7d = 0
        volume = 0.0
        succeeded = 0
        guardian_counts = Counter()  # type: Counter
        guardian_reasons = {}  # type: Dict[str, Counter]

        for r in records:
            by_status[r.status] += 1
            by_action_type[r.action_type] = by_action_type.get(r.action_type, 0) + 1
            age = now - r.timestamp
            if age <= timedelta(days=1):
                last_24h += 1
            if age <= timedelta(days=7):
                last_7d += 1
            if r.succeeded:
                succeeded += 1
                volume += _amount(r.payload)
            for d in r.denials:
                guardian = d.get("guardian", "unknown")
                guardian_counts[guardian] += 1
                guardian_reasons.setdefault(guardian, Counter())[d.get("reason", "")] += 1

        decided = len(records) - by_status["pending"]
        success_rate = round(100.0 * succeeded / decided, 1) if decided else 0.0

        breakdown = [
            {
                "guardian": guardian,
                "count": count,
                "topReason": guardian_reasons[guardian].most_common(1)[0][0],
            }
            for guardian, count in guardian_counts.most_common()
        ]

        return {
            "total": len(records),
            "byStatus": by_status,
            "byActionType": by_action_type,
            "last24h": last_24h,
            "last7d": last_7d,
            "totalVolume": volume,
            "successRate": success_rate,
            "denialBreakdown": breakdown,
        }

    def export_csv(self, flt: Optional[AuditFilter] = None) -> bytes:
        buf = io.StringIO()
        writer = csv.writer(buf)
        writer.writerow(CSV_COLUMNS)
        for r in self._matching(flt):
            writer.writerow([
                r.id,
                r.timestamp.isoformat(),
                r.action_type,
                r.action_category,
                r.status,
                "true" if r.passed else "false",
                r.account.get("id") or "",
                r.account.get("name") or "",
                r.payload.get("market", ""),
                r.payload.get("amount", ""),
                r.payload.get("side", ""),
                r.tx_hash or "",
                r.order_id or "",
                r.source,
                r.stage or "",
                ";".join("{}: {}".format(d.get("guardian"), d.get("reason")) for d in r.denials),
            ])
        return buf.getvalue().encode("utf-8")

    @classmethod
    def from_journal(cls, path: str, journal: Optional[AuditJournal] = None) -> AuditLedger:
        """Rehydrate a ledger from a journal file (does not re-write it)."""
        ledger = cls(journal=None)
        for data in JournalReader(path).read_all():
            ledger._records.append(AuditRecord.from_dict(data))
        ledger._journal = journal
        logger.info("Audit ledger rehydrated: %d record(s) from %s", len(ledger._records), path)
        return ledger


async def persist_audit_record(pool: Any, record: AuditRecord) -> bool:
    """Insert one record into audit_records. Returns False if it already exists."""
    return await insert_audit_row(pool, record.to_dict())
