"""
Daily totals ledger and summary cache, one of each per branch.

Ledger payload (key ``daily_ledger``)::

    {"days": {"2024-03-01": {"dayKey": "2024-03-01",
                             "entries": [{"billId": "...", "timestamp": 1709290800000,
                                          "finalTotal": "150.00"}]}}}

Summary payload (key ``daily_summary``)::

    {"summaries": {"2024-03-01": {"dayKey": "2024-03-01", "totalRevenue": "150.00"}}}

Amounts are written as decimal strings; numbers from older payloads are
accepted on read. A payload that fails validation is replaced by the empty
state and overwritten by the next successful write.
"""
import datetime as dt
import json
import logging
import time
from collections import namedtuple
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Iterable, List, Optional

from branch_storage import (
    DAILY_LEDGER,
    DAILY_SUMMARY,
    LocalStorage,
    StorageError,
    StorageWriteError,
    scoped_key,
)

logger = logging.getLogger(__name__)

# value: decoded payload (or the default); valid: False when the default was substituted
Decoded = namedtuple("Decoded", ["value", "valid"])

ZERO = Decimal("0")


def now_ms() -> int:
    return int(time.time() * 1000)


def day_key(timestamp_ms: Optional[int] = None) -> str:
    """Local calendar day (YYYY-MM-DD) of an epoch-milliseconds timestamp."""
    if timestamp_ms is None:
        timestamp_ms = now_ms()
    return dt.datetime.fromtimestamp(timestamp_ms / 1000).strftime("%Y-%m-%d")


def parse_amount(value: Any) -> Decimal:
    if isinstance(value, bool) or value is None:
        raise ValueError(f"Not an amount: {value!r}")
    try:
        amount = Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"Not an amount: {value!r}") from exc
    if not amount.is_finite():
        raise ValueError(f"Not an amount: {value!r}")
    return amount


@dataclass(frozen=True)
class LedgerEntry:
    bill_id: str
    timestamp: int
    final_total: Decimal

    @property
    def day_key(self) -> str:
        return day_key(self.timestamp)

    def to_dict(self) -> Dict[str, Any]:
        return {"billId": self.bill_id, "timestamp": self.timestamp, "finalTotal": str(self.final_total)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LedgerEntry":
        bill_id = data.get("billId")
        timestamp = data.get("timestamp")
        if not isinstance(bill_id, str) or isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
            raise ValueError("Malformed ledger entry")
        return cls(bill_id, int(timestamp), parse_amount(data.get("finalTotal")))


@dataclass
class DayLedger:
    day_key: str
    entries: List[LedgerEntry] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"dayKey": self.day_key, "entries": [e.to_dict() for e in self.entries]}


@dataclass
class Ledger:
    days: Dict[str, DayLedger] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"days": {k: d.to_dict() for k, d in self.days.items()}}


@dataclass
class DailySummary:
    day_key: str
    total_revenue: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {"dayKey": self.day_key, "totalRevenue": str(self.total_revenue)}


def _load_json(raw: Optional[str]):
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return None


def decode_ledger(raw: Optional[str]) -> Decoded:
    if raw is None:
        return Decoded(Ledger(), True)
    parsed = _load_json(raw)
    if not isinstance(parsed, dict) or not isinstance(parsed.get("days"), dict):
        return Decoded(Ledger(), False)
    ledger = Ledger()
    for key, day in parsed["days"].items():
        if not isinstance(day, dict) or not isinstance(day.get("entries"), list):
            logger.warning("Skipping malformed ledger day %s", key)
            continue
        entries = []
        for item in day["entries"]:
            try:
                entries.append(LedgerEntry.from_dict(item if isinstance(item, dict) else {}))
            except ValueError:
                logger.warning("Skipping malformed ledger entry on %s: %r", key, item)
        ledger.days[key] = DayLedger(key, entries)
    return Decoded(ledger, True)


def decode_summaries(raw: Optional[str]) -> Decoded:
    if raw is None:
        return Decoded({}, True)
    parsed = _load_json(raw)
    if not isinstance(parsed, dict) or not isinstance(parsed.get("summaries"), dict):
        return Decoded({}, False)
    summaries: Dict[str, DailySummary] = {}
    for key, item in parsed["summaries"].items():
        try:
            summaries[key] = DailySummary(key, parse_amount((item or {}).get("totalRevenue")))
        except (AttributeError, ValueError):
            logger.warning("Skipping malformed summary for %s: %r", key, item)
    return Decoded(summaries, True)


class LedgerStore:
    """Append-only bill-print ledger. ``append`` is the only mutation path."""

    def __init__(self, storage: LocalStorage, clock: Optional[Callable[[], int]] = None):
        self.storage = storage
        self.clock = clock or now_ms

    def load(self, branch: str) -> Ledger:
        key = scoped_key(branch, DAILY_LEDGER)
        try:
            raw = self.storage.get_item(key)
        except StorageError:
            logger.exception("Error loading ledger %s", key)
            return Ledger()
        decoded = decode_ledger(raw)
        if not decoded.valid:
            logger.warning("Corrupt ledger payload under %s; using an empty ledger", key)
        return decoded.value

    def save(self, branch: str, ledger: Ledger) -> bool:
        key = scoped_key(branch, DAILY_LEDGER)
        try:
            self.storage.set_item(key, json.dumps(ledger.to_dict(), separators=(",", ":")))
            return True
        except StorageWriteError:
            logger.error("Error saving ledger %s", key, exc_info=True)
            return False

    def append(self, branch: str, bill_id: str, final_total: Decimal) -> LedgerEntry:
        with self.storage.lock:
            ledger = self.load(branch)
            timestamp = self.clock()
            entry = LedgerEntry(bill_id, timestamp, parse_amount(final_total))
            key = day_key(timestamp)
            ledger.days.setdefault(key, DayLedger(key)).entries.append(entry)
            self.save(branch, ledger)
        return entry

    def available_days(self, branch: str) -> List[str]:
        return sorted(self.load(branch).days, reverse=True)

    def entries_for_day(self, branch: str, day: str) -> List[LedgerEntry]:
        found = self.load(branch).days.get(day)
        return list(found.entries) if found else []

    def day_total(self, branch: str, day: str) -> Decimal:
        return sum((e.final_total for e in self.entries_for_day(branch, day)), ZERO)


class SummaryStore:
    """Per-day revenue cache, filled lazily from the ledger and bumped on every print.

    The cache is not re-derived once written: deleting ledger data without
    clearing the summary (see :func:`clear_daily_totals_cache`) leaves the two
    out of step.
    """

    def __init__(self, storage: LocalStorage, ledger: LedgerStore):
        self.storage = storage
        self.ledger = ledger

    def load(self, branch: str) -> Dict[str, DailySummary]:
        key = scoped_key(branch, DAILY_SUMMARY)
        try:
            raw = self.storage.get_item(key)
        except StorageError:
            logger.exception("Error loading daily summaries %s", key)
            return {}
        decoded = decode_summaries(raw)
        if not decoded.valid:
            logger.warning("Corrupt summary payload under %s; starting from empty", key)
        return decoded.value

    def save(self, branch: str, summaries: Dict[str, DailySummary]) -> bool:
        key = scoped_key(branch, DAILY_SUMMARY)
        payload = {"summaries": {k: s.to_dict() for k, s in summaries.items()}}
        try:
            self.storage.set_item(key, json.dumps(payload, separators=(",", ":")))
            return True
        except StorageWriteError:
            logger.error("Error saving daily summaries %s", key, exc_info=True)
            return False

    def get_or_compute(self, branch: str, day: str) -> DailySummary:
        with self.storage.lock:
            summaries = self.load(branch)
            if day in summaries:
                return summaries[day]
            summary = DailySummary(day, self.ledger.day_total(branch, day))
            summaries[day] = summary
            self.save(branch, summaries)
        return summary

    def peek(self, branch: str, day: str) -> DailySummary:
        """Cached summary or the ledger total, without writing anything back.

        Safe to call while another writer sits between its ledger append and
        its summary increment.
        """
        cached = self.load(branch).get(day)
        if cached is not None:
            return cached
        return DailySummary(day, self.ledger.day_total(branch, day))

    def increment(self, branch: str, day: str, delta: Decimal) -> DailySummary:
        with self.storage.lock:
            summaries = self.load(branch)
            current = summaries.get(day) or DailySummary(day, ZERO)
            summaries[day] = DailySummary(day, current.total_revenue + parse_amount(delta))
            self.save(branch, summaries)
        return summaries[day]


def clear_daily_totals_cache(storage: LocalStorage, branch: str) -> None:
    """Drop the branch's ledger and summary together so they cannot diverge."""
    with storage.lock:
        for base in (DAILY_LEDGER, DAILY_SUMMARY):
            key = scoped_key(branch, base)
            try:
                storage.remove_item(key)
            except StorageWriteError:
                logger.error("Error clearing %s", key, exc_info=True)


def _field(obj: Any, *names: str) -> Any:
    for name in names:
        if isinstance(obj, dict):
            if name in obj:
                return obj[name]
        elif hasattr(obj, name):
            return getattr(obj, name)
    return None


def aggregate_item_quantities(bills: Iterable[Any]) -> Dict[str, Decimal]:
    """Sum line-item quantities per trimmed label.

    Empty labels and non-positive quantities are skipped; labels are compared
    case-sensitively. Accepts saved bill records or plain dicts.
    """
    aggregated: Dict[str, Decimal] = {}
    for bill in bills:
        for item in _field(bill, "line_items", "lineItems") or []:
            label = _field(item, "label")
            if not isinstance(label, str) or not label.strip():
                continue
            try:
                qty = parse_amount(_field(item, "quantity"))
            except ValueError:
                continue
            if qty <= 0:
                continue
            normalized = label.strip()
            aggregated[normalized] = aggregated.get(normalized, ZERO) + qty
    return aggregated
