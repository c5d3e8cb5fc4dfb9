#!/usr/bin/env python3
# POS billing ledger: branch-scoped SQLite storage + remote daily totals + CLI
import argparse
import json
import logging
import os
import threading
from decimal import ROUND_HALF_UP
from typing import Any, Dict, Iterable, List, Optional

from dotenv import load_dotenv

from balance_sheet import BalanceSheetReconciler, BalanceSheetView
from bill_archive import (
    BillArchive,
    BillDefaultsStore,
    BillFormatDefaults,
    LineItem,
    SavedBillRecord,
    generate_bill_code,
)
from billing import calculate_breakdown, safe_decimal
from branch_storage import (
    DEFAULT_CREDENTIALS,
    BranchSession,
    LocalStorage,
    StorageWriteError,
    is_migration_complete,
)
from ledger_store import LedgerStore, SummaryStore, aggregate_item_quantities, clear_daily_totals_cache
from remote_ledger import PushWorker, RemoteLedger, RemoteUnavailable, UserProfile, to_minor_units

logger = logging.getLogger(__name__)

DB_PATH = os.environ.get("POS_DB_PATH", "pos.db")

DEFAULT_FIXED_PRINT_LOCATIONS = {"bachupally": "bachupally", "nezampat": "nezampat"}


def _env_json_object(name: str, default: Dict[str, str]) -> Dict[str, str]:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return dict(default)
    try:
        value = json.loads(raw)
    except ValueError:
        logger.warning("Invalid %s JSON; using defaults", name)
        return dict(default)
    if not isinstance(value, dict):
        logger.warning("%s must be a JSON object; using defaults", name)
        return dict(default)
    return {str(k): str(v) for k, v in value.items()}


def line_items_from_payload(items: Optional[Iterable[Dict[str, Any]]]) -> List[LineItem]:
    """Build line items from request/CLI dicts; bad numbers count as zero."""
    out = []
    for item in items or []:
        if not isinstance(item, dict):
            continue
        out.append(LineItem(
            label=str(item.get("label") or ""),
            quantity=safe_decimal(item.get("quantity")),
            unit_price=safe_decimal(item.get("unitPrice", item.get("unit_price"))),
        ))
    return out


class PosService:
    """Wires the branch session, the local stores and the remote ledger together."""

    def __init__(
        self,
        storage: LocalStorage,
        credentials: Optional[Dict[str, str]] = None,
        remote: Optional[RemoteLedger] = None,
        clock=None,
        fixed_print_locations: Optional[Dict[str, str]] = None,
    ):
        self.storage = storage
        self.session = BranchSession(storage, credentials)
        self.ledger = LedgerStore(storage, clock)
        self.summaries = SummaryStore(storage, self.ledger)
        self.archive = BillArchive(storage, clock)
        self.defaults = BillDefaultsStore(
            storage,
            DEFAULT_FIXED_PRINT_LOCATIONS if fixed_print_locations is None else fixed_print_locations,
        )
        self.remote = remote if remote is not None else RemoteLedger()
        self.reconciler = BalanceSheetReconciler(self.session, self.ledger, self.summaries, self.archive, self.remote)
        self.last_remote_push: Optional[threading.Event] = None
        self._push_workers: Dict[str, PushWorker] = {}
        self._push_workers_lock = threading.Lock()
        self._unsubscribe = self.reconciler.listen(storage)

    @classmethod
    def from_env(cls, db_path: Optional[str] = None) -> "PosService":
        return cls(
            LocalStorage(db_path or DB_PATH),
            credentials=_env_json_object("POS_BRANCH_CREDENTIALS", DEFAULT_CREDENTIALS),
            remote=RemoteLedger.from_env(),
            fixed_print_locations=_env_json_object("POS_FIXED_PRINT_LOCATIONS", DEFAULT_FIXED_PRINT_LOCATIONS),
        )

    # ---------- SESSION ----------
    def login(self, username: str, password: str) -> bool:
        if not self.session.login(username, password):
            return False
        logger.info("Branch %s logged in", self.session.branch)
        self.sync_print_location()
        return True

    def close(self) -> None:
        """Stop listening for storage events from other instances."""
        self._unsubscribe()

    def logout(self) -> None:
        branch = self.session.branch
        self.session.logout()
        self.reconciler.reset()
        if branch:
            logger.info("Branch %s logged out", branch)

    def hydrate(self) -> Optional[str]:
        branch = self.session.hydrate()
        if branch:
            self.sync_print_location()
        return branch

    # ---------- PRINT FLOW ----------
    def print_bill(
        self,
        line_items: List[LineItem],
        tax_rate: Any = 0,
        discount_type: str = "percentage",
        discount_value: Any = 0,
        branch: Optional[str] = None,
    ) -> SavedBillRecord:
        """Archive the bill, file it in the ledger and summary, then push the day total.

        Only the archive write can fail the print; ledger/summary writes are
        best effort and the remote push never blocks or raises. The whole
        sequence holds the storage lock, so prints from concurrent requests
        land one after another and their pushes are queued in print order.
        """
        branch = self.session.require_branch(branch)
        breakdown = calculate_breakdown(line_items, tax_rate, discount_type, discount_value)
        with self.storage.lock:
            record = self.archive.save_record(branch, {
                "bill_code": generate_bill_code(),
                "line_items": line_items,
                "tax_rate": safe_decimal(tax_rate),
                "discount_type": discount_type,
                "discount_value": safe_decimal(discount_value),
                "breakdown": breakdown,
                "bill_format_snapshot": self.defaults.snapshot(branch),
            })
            entry = self.ledger.append(branch, record.id, breakdown.final_total)
            day = entry.day_key
            self.summaries.increment(branch, day, breakdown.final_total)
            logger.info("Printed bill %s for %s on %s (total=%s)", record.id, branch, day, breakdown.final_total)
            self.push_daily_total(branch, day)
        return record

    def _push_worker(self, branch: str) -> PushWorker:
        with self._push_workers_lock:
            worker = self._push_workers.get(branch)
            if worker is None:
                worker = self._push_workers[branch] = PushWorker(name=f"remote-push-{branch}")
            return worker

    def push_daily_total(self, branch: str, day: str) -> Optional[threading.Event]:
        """Queue the day's summary total and item quantities for the remote ledger."""
        if not self.remote.configured:
            logger.debug("No remote ledger configured; skipping push for %s %s", branch, day)
            return None
        total = self.summaries.get_or_compute(branch, day).total_revenue
        quantities = aggregate_item_quantities(self.archive.bills_for_day(branch, day))
        product_quantities = []
        for label, qty in sorted(quantities.items()):
            count = int(qty.to_integral_value(rounding=ROUND_HALF_UP))
            if count > 0:
                product_quantities.append((label, count))
        self.last_remote_push = self._push_worker(branch).submit(
            self.remote.save_daily_total,
            branch,
            day,
            to_minor_units(total),
            product_quantities,
            description=f"Remote save of daily total {branch} {day}",
        )
        return self.last_remote_push

    # ---------- BALANCE SHEET ----------
    def balance_sheet(self, day: Optional[str] = None) -> BalanceSheetView:
        self.session.require_branch()
        return self.reconciler.refresh(day)

    def clear_all_daily_totals(self, branch: Optional[str] = None) -> None:
        """Clear the branch's remote daily totals, then its local ledger and summary.

        Remote errors propagate and leave local data untouched.
        """
        branch = self.session.require_branch(branch)
        if self.remote.configured:
            self.remote.clear_all_daily_totals(branch)
        clear_daily_totals_cache(self.storage, branch)
        self.reconciler.reset()
        logger.info("Cleared daily totals for %s", branch)

    # ---------- BILL FORMAT DEFAULTS ----------
    def get_bill_defaults(self, branch: Optional[str] = None) -> BillFormatDefaults:
        return self.defaults.load(self.session.require_branch(branch))

    def save_bill_defaults(self, defaults: BillFormatDefaults, branch: Optional[str] = None) -> BillFormatDefaults:
        branch = self.session.require_branch(branch)
        self.defaults.save(branch, defaults)
        if self.remote.configured and defaults.print_location_address:
            profile = UserProfile(branch, defaults.print_location_address)
            self.last_remote_push = self._push_worker(branch).submit(
                self.remote.save_caller_user_profile,
                branch,
                profile,
                description=f"Remote profile save for {branch}",
            )
        return defaults

    def sync_print_location(self) -> None:
        """Adopt the remote profile's print location when the branch has none locally."""
        branch = self.session.branch
        if not branch or not self.remote.configured:
            return
        try:
            profile = self.remote.get_caller_user_profile(branch)
        except RemoteUnavailable as exc:
            logger.info("Profile sync skipped for %s: %s", branch, exc)
            return
        if not profile or not profile.bill_print_location:
            return
        current = self.defaults.load(branch)
        if current.print_location_address:
            return
        try:
            self.defaults.save(branch, BillFormatDefaults(
                current.receipt_style,
                current.payment_scan_data_url,
                profile.bill_print_location,
            ))
        except StorageWriteError:
            logger.error("Failed to store synced print location for %s", branch, exc_info=True)


# ---------- CLI ----------
def _print_view(view: BalanceSheetView):
    if not view.selected_day:
        print(f"No daily totals for {view.branch}")
        return
    print(f"{view.branch} {view.selected_day} ({view.source}): total {view.day_total}")
    for label, qty in sorted(view.item_quantities.items(), key=lambda kv: kv[1], reverse=True):
        print(f"  {label}: {qty}")


def main():
    load_dotenv()
    logging.basicConfig(
        level=getattr(logging, (os.environ.get("POS_LOG_LEVEL") or "INFO").upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(message)s",
    )
    ap = argparse.ArgumentParser(description="POS billing ledger")
    ap.add_argument("--db", default=DB_PATH, help="Path to SQLite DB")
    ap.add_argument("--branch", default=None, help="Branch to operate on (default: persisted active branch)")
    ap.add_argument("--migrate", action="store_true", help="Run the legacy data migration for the branch")
    ap.add_argument("--days", action="store_true", help="List days with local ledger data")
    ap.add_argument("--day", default=None, help="Show totals and item quantities for YYYY-MM-DD")
    ap.add_argument("--bills", action="store_true", help="List saved bills")
    ap.add_argument("--clear-local", action="store_true", help="Clear local ledger and summary caches")
    args = ap.parse_args()

    service = PosService.from_env(args.db)
    if args.branch:
        # operator override; skips the credential check
        copied = service.session.activate(args.branch)
    else:
        copied = False
        service.hydrate()
    branch = service.session.require_branch()

    if args.migrate:
        if copied:
            print("Copied legacy data into", branch)
        elif is_migration_complete(service.storage, branch):
            print("Migration already complete for", branch)
        else:
            print("Migration failed for", branch, "(see log); it will be retried")

    if args.days:
        for day in service.ledger.available_days(branch):
            print(day, service.summaries.get_or_compute(branch, day).total_revenue)

    if args.day:
        _print_view(service.balance_sheet(args.day))

    if args.bills:
        for bill in service.archive.get_all(branch):
            print(bill.bill_code, bill.day_key, bill.breakdown.final_total)

    if args.clear_local:
        clear_daily_totals_cache(service.storage, branch)
        print("Cleared local daily totals for", branch)


if __name__ == "__main__":
    main()
