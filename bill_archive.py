"""
Saved bill archive and bill-format defaults, both scoped per branch.

Bills are kept as one JSON list per branch; every call loads, modifies and
stores the whole list, which is fine at the volume of a single till.
"""
import datetime as dt
import json
import logging
import random
import string
import uuid
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

from branch_storage import (
    BILL_DEFAULTS,
    SAVED_BILLS,
    LocalStorage,
    StorageError,
    StorageWriteError,
    scoped_key,
)
from ledger_store import day_key, now_ms, parse_amount

logger = logging.getLogger(__name__)

RECEIPT_STYLES = ("classic", "compact")
DEFAULT_RECEIPT_STYLE = "classic"

_BILL_CODE_CHARS = string.ascii_uppercase + string.digits


class BillSaveError(RuntimeError):
    """A bill could not be written to the archive."""


def generate_bill_code(now: Optional[dt.datetime] = None) -> str:
    """BILL-YYYYMMDD-HHMMSS-XXXX in local time with a random suffix."""
    now = now or dt.datetime.now()
    suffix = "".join(random.choice(_BILL_CODE_CHARS) for _ in range(4))
    return f"BILL-{now:%Y%m%d}-{now:%H%M%S}-{suffix}"


@dataclass(frozen=True)
class LineItem:
    label: str
    quantity: Decimal
    unit_price: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {"label": self.label, "quantity": str(self.quantity), "unitPrice": str(self.unit_price)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LineItem":
        label = data.get("label")
        if not isinstance(label, str):
            raise ValueError("Line item label must be a string")
        return cls(label, parse_amount(data.get("quantity")), parse_amount(data.get("unitPrice")))


@dataclass(frozen=True)
class Breakdown:
    subtotal: Decimal
    tax_amount: Decimal
    discount_amount: Decimal
    final_total: Decimal

    def to_dict(self) -> Dict[str, str]:
        return {
            "subtotal": str(self.subtotal),
            "taxAmount": str(self.tax_amount),
            "discountAmount": str(self.discount_amount),
            "finalTotal": str(self.final_total),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Breakdown":
        return cls(
            parse_amount(data.get("subtotal")),
            parse_amount(data.get("taxAmount")),
            parse_amount(data.get("discountAmount")),
            parse_amount(data.get("finalTotal")),
        )


@dataclass(frozen=True)
class BillFormatSnapshot:
    receipt_style: str = DEFAULT_RECEIPT_STYLE
    payment_scan_data_url: Optional[str] = None
    print_location_address: Optional[str] = None

    def to_dict(self) -> Dict[str, str]:
        out = {"receiptStyle": self.receipt_style}
        if self.payment_scan_data_url:
            out["paymentScanDataUrl"] = self.payment_scan_data_url
        if self.print_location_address:
            out["printLocationAddress"] = self.print_location_address
        return out

    @classmethod
    def from_dict(cls, data: Any) -> "BillFormatSnapshot":
        if not isinstance(data, dict):
            return cls()
        style = data.get("receiptStyle")
        return cls(
            style if style in RECEIPT_STYLES else DEFAULT_RECEIPT_STYLE,
            data.get("paymentScanDataUrl") or None,
            data.get("printLocationAddress") or None,
        )


# Defaults share the snapshot's shape; a snapshot is the defaults frozen at print time
BillFormatDefaults = BillFormatSnapshot


@dataclass(frozen=True)
class SavedBillRecord:
    id: str
    timestamp: int
    bill_code: str
    line_items: Tuple[LineItem, ...]
    tax_rate: Decimal
    discount_type: str
    discount_value: Decimal
    breakdown: Breakdown
    bill_format_snapshot: BillFormatSnapshot

    @property
    def day_key(self) -> str:
        return day_key(self.timestamp)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "billCode": self.bill_code,
            "lineItems": [li.to_dict() for li in self.line_items],
            "taxRate": str(self.tax_rate),
            "discountType": self.discount_type,
            "discountValue": str(self.discount_value),
            "breakdown": self.breakdown.to_dict(),
            "billFormatSnapshot": self.bill_format_snapshot.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SavedBillRecord":
        timestamp = data.get("timestamp")
        if not isinstance(data.get("id"), str) or isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
            raise ValueError("Saved bill needs an id and timestamp")
        if data.get("discountType") not in ("percentage", "fixed"):
            raise ValueError("Unknown discount type")
        return cls(
            id=data["id"],
            timestamp=int(timestamp),
            bill_code=str(data.get("billCode") or ""),
            line_items=tuple(LineItem.from_dict(li) for li in data.get("lineItems") or []),
            tax_rate=parse_amount(data.get("taxRate", 0)),
            discount_type=data["discountType"],
            discount_value=parse_amount(data.get("discountValue", 0)),
            breakdown=Breakdown.from_dict(data.get("breakdown") or {}),
            bill_format_snapshot=BillFormatSnapshot.from_dict(data.get("billFormatSnapshot")),
        )


class BillArchive:
    """Full bill records per branch, keyed by generated id."""

    def __init__(
        self,
        storage: LocalStorage,
        clock: Optional[Callable[[], int]] = None,
        id_factory: Optional[Callable[[], str]] = None,
    ):
        self.storage = storage
        self.clock = clock or now_ms
        self.id_factory = id_factory or (lambda: str(uuid.uuid4()))

    def _load_raw(self, branch: str) -> List[Any]:
        key = scoped_key(branch, SAVED_BILLS)
        raw = self.storage.get_item(key)
        if raw is None:
            return []
        try:
            parsed = json.loads(raw)
        except ValueError:
            parsed = None
        if not isinstance(parsed, list):
            logger.warning("Corrupt saved bills payload under %s; starting from empty", key)
            return []
        return parsed

    def save(self, branch: str, bill: Dict[str, Any]) -> str:
        """
        bill = {
          'bill_code': 'BILL-20240301-120000-AB12',
          'line_items': [LineItem(...)],
          'tax_rate': Decimal('5'), 'discount_type': 'fixed', 'discount_value': Decimal('0'),
          'breakdown': Breakdown(...),
          'bill_format_snapshot': BillFormatSnapshot(...),
        }
        Returns the generated bill id; raises BillSaveError if nothing was stored.
        """
        return self.save_record(branch, bill).id

    def save_record(self, branch: str, bill: Dict[str, Any]) -> SavedBillRecord:
        """Same as :meth:`save` but returns the stored record."""
        key = scoped_key(branch, SAVED_BILLS)
        with self.storage.lock:
            record = SavedBillRecord(
                id=self.id_factory(),
                timestamp=self.clock(),
                bill_code=bill["bill_code"],
                line_items=tuple(bill["line_items"]),
                tax_rate=bill["tax_rate"],
                discount_type=bill["discount_type"],
                discount_value=bill["discount_value"],
                breakdown=bill["breakdown"],
                bill_format_snapshot=bill.get("bill_format_snapshot") or BillFormatSnapshot(),
            )
            try:
                bills = self._load_raw(branch)
                bills.append(record.to_dict())
                self.storage.set_item(key, json.dumps(bills, separators=(",", ":")))
            except StorageError as exc:
                logger.error("Error saving bill %s under %s: %s", record.id, key, exc)
                raise BillSaveError("Failed to save bill") from exc
        return record

    def get_all(self, branch: str) -> List[SavedBillRecord]:
        try:
            raw_bills = self._load_raw(branch)
        except StorageError:
            logger.exception("Error loading bills for %s", branch)
            return []
        bills = []
        for item in raw_bills:
            try:
                bills.append(SavedBillRecord.from_dict(item))
            except (AttributeError, TypeError, ValueError):
                logger.warning("Skipping malformed saved bill: %r", item)
        return bills

    def get_by_id(self, branch: str, bill_id: str) -> Optional[SavedBillRecord]:
        for bill in self.get_all(branch):
            if bill.id == bill_id:
                return bill
        return None

    def bills_for_day(self, branch: str, day: str) -> List[SavedBillRecord]:
        """Bills whose own timestamp falls on ``day`` (independent of the ledger's day key)."""
        return [bill for bill in self.get_all(branch) if bill.day_key == day]

    def clear_all(self, branch: str) -> None:
        key = scoped_key(branch, SAVED_BILLS)
        try:
            self.storage.remove_item(key)
        except StorageWriteError:
            logger.error("Error clearing bills under %s", key, exc_info=True)


class BillDefaultsStore:
    """Branch print-format defaults, with per-branch fixed print locations."""

    def __init__(self, storage: LocalStorage, fixed_print_locations: Optional[Dict[str, str]] = None):
        self.storage = storage
        self.fixed_print_locations = dict(fixed_print_locations or {})

    def load(self, branch: str) -> BillFormatDefaults:
        key = scoped_key(branch, BILL_DEFAULTS)
        try:
            raw = self.storage.get_item(key)
        except StorageError:
            logger.exception("Error loading bill format defaults %s", key)
            return BillFormatDefaults()
        if raw is None:
            return BillFormatDefaults()
        try:
            parsed = json.loads(raw)
        except ValueError:
            logger.warning("Corrupt bill format defaults under %s", key)
            return BillFormatDefaults()
        return BillFormatDefaults.from_dict(parsed)

    def save(self, branch: str, defaults: BillFormatDefaults) -> None:
        """Raises StorageWriteError when the defaults could not be stored."""
        key = scoped_key(branch, BILL_DEFAULTS)
        self.storage.set_item(key, json.dumps(defaults.to_dict(), separators=(",", ":")))

    def enforce_print_location(self, branch: str, address: Optional[str]) -> Optional[str]:
        return self.fixed_print_locations.get(branch, address)

    def snapshot(self, branch: str) -> BillFormatSnapshot:
        defaults = self.load(branch)
        return replace(
            defaults,
            print_location_address=self.enforce_print_location(branch, defaults.print_location_address),
        )
