"""
Balance sheet read path: remote daily totals first, local stores otherwise.

The remote answer is taken as a whole when it has any days; nothing is merged
field by field with local data. Writes from other storage instances opened
on the same file in this process trigger a local-only rebuild.
"""
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Tuple

from bill_archive import BillArchive
from branch_storage import BranchSession, LocalStorage, StorageEvent, is_daily_totals_key_for_branch
from ledger_store import ZERO, LedgerStore, SummaryStore, aggregate_item_quantities
from remote_ledger import RemoteDailyTotal, RemoteLedger, RemoteUnavailable, from_minor_units

logger = logging.getLogger(__name__)

SOURCE_REMOTE = "remote"
SOURCE_LOCAL = "local"


@dataclass
class BalanceSheetView:
    branch: Optional[str] = None
    available_days: List[str] = field(default_factory=list)
    selected_day: Optional[str] = None
    day_total: Decimal = ZERO
    item_quantities: Dict[str, Decimal] = field(default_factory=dict)
    source: str = SOURCE_LOCAL

    def to_dict(self):
        quantities = sorted(self.item_quantities.items(), key=lambda kv: kv[1], reverse=True)
        return {
            "branch": self.branch,
            "availableDays": list(self.available_days),
            "selectedDay": self.selected_day,
            "dayTotal": str(self.day_total),
            "itemQuantities": [{"label": label, "quantity": str(qty)} for label, qty in quantities],
            "source": self.source,
        }


class BalanceSheetReconciler:
    """Builds the balance sheet view for the session's active branch.

    Keeps the selected day and the last remote answer between calls, so
    picking another day does not query the remote again.
    """

    def __init__(
        self,
        session: BranchSession,
        ledger: LedgerStore,
        summaries: SummaryStore,
        archive: BillArchive,
        remote: Optional[RemoteLedger] = None,
        on_change: Optional[Callable[[BalanceSheetView], None]] = None,
    ):
        self.session = session
        self.ledger = ledger
        self.summaries = summaries
        self.archive = archive
        self.remote = remote
        self.on_change = on_change
        self.selected_day: Optional[str] = None
        self.view = BalanceSheetView()
        self._branch: Optional[str] = None
        self._remote_sheet: Optional[List[Tuple[str, RemoteDailyTotal]]] = None

    def _sync_branch(self) -> Optional[str]:
        branch = self.session.branch
        if branch != self._branch:
            self._branch = branch
            self.selected_day = None
            self._remote_sheet = None
        return branch

    def fetch_remote(self, branch: str) -> Optional[List[Tuple[str, RemoteDailyTotal]]]:
        if self.remote is None or not self.remote.configured:
            return None
        try:
            return self.remote.get_balance_sheet(branch)
        except RemoteUnavailable as exc:
            logger.info("Remote balance sheet unavailable for %s, using local data: %s", branch, exc)
            return None

    def refresh(self, selected_day: Optional[str] = None) -> BalanceSheetView:
        """Query the remote and rebuild; the day argument overrides the current selection."""
        branch = self._sync_branch()
        if selected_day:
            self.selected_day = selected_day
        if branch is None:
            return self._publish(BalanceSheetView())
        self._remote_sheet = self.fetch_remote(branch)
        return self._publish(self._build(branch, self._remote_sheet))

    def select_day(self, day: Optional[str]) -> BalanceSheetView:
        branch = self._sync_branch()
        self.selected_day = day
        if branch is None:
            return self._publish(BalanceSheetView())
        return self._publish(self._build(branch, self._remote_sheet))

    def reset(self) -> None:
        self.selected_day = None
        self._remote_sheet = None

    def handle_storage_event(self, event: StorageEvent) -> Optional[BalanceSheetView]:
        """Rebuild from local stores when the active branch's ledger or summary changed."""
        branch = self._sync_branch()
        if branch is None or not is_daily_totals_key_for_branch(event.key, branch):
            return None
        return self._publish(self._build(branch, None, cache_summary=False))

    def listen(self, storage: LocalStorage) -> Callable[[], None]:
        return storage.subscribe(self.handle_storage_event)

    def _publish(self, view: BalanceSheetView) -> BalanceSheetView:
        self.view = view
        if self.on_change:
            self.on_change(view)
        return view

    def _build(self, branch: str, remote_sheet, cache_summary: bool = True) -> BalanceSheetView:
        if remote_sheet:
            days = sorted((date for date, _ in remote_sheet), reverse=True)
        else:
            days = self.ledger.available_days(branch)

        if not days:
            self.selected_day = None
        elif not self.selected_day:
            self.selected_day = days[0]

        view = BalanceSheetView(branch=branch, available_days=days, selected_day=self.selected_day)
        if not self.selected_day:
            view.source = SOURCE_REMOTE if remote_sheet else SOURCE_LOCAL
            return view

        remote_entry = dict(remote_sheet).get(self.selected_day) if remote_sheet else None
        if remote_entry is not None:
            view.day_total = from_minor_units(remote_entry.total_revenue)
            view.item_quantities = {label: Decimal(qty) for label, qty in remote_entry.product_quantities}
            view.source = SOURCE_REMOTE
            return view

        if cache_summary:
            summary = self.summaries.get_or_compute(branch, self.selected_day)
        else:
            # the writer may not have bumped the summary yet
            summary = self.summaries.peek(branch, self.selected_day)
        view.day_total = summary.total_revenue
        view.item_quantities = aggregate_item_quantities(self.archive.bills_for_day(branch, self.selected_day))
        view.source = SOURCE_LOCAL
        return view
