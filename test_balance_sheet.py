import datetime as dt
import os
import tempfile
import unittest
from decimal import Decimal

from balance_sheet import SOURCE_LOCAL, SOURCE_REMOTE, BalanceSheetReconciler
from bill_archive import BillArchive, LineItem
from billing import calculate_breakdown
from branch_storage import BranchSession, LocalStorage
from ledger_store import LedgerStore, SummaryStore
from remote_ledger import RemoteDailyTotal, RemoteUnavailable


def local_ms(*args) -> int:
    return int(dt.datetime(*args).timestamp() * 1000)


class FakeRemote:
    def __init__(self, sheet=None, error=None):
        self.sheet = sheet or []
        self.error = error
        self.configured = True
        self.calls = 0

    def get_balance_sheet(self, branch):
        self.calls += 1
        if self.error:
            raise self.error
        return [(t.date, t) for t in self.sheet]


class BalanceSheetTest(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self._tmp.name, "pos.db")
        self.storage = LocalStorage(self.db_path)
        self.now = local_ms(2024, 3, 1, 12, 0)
        clock = lambda: self.now
        self.session = BranchSession(self.storage, {"B1": "pw", "B2": "pw"})
        self.ledger = LedgerStore(self.storage, clock)
        self.summaries = SummaryStore(self.storage, self.ledger)
        self.archive = BillArchive(self.storage, clock)
        self.session.login("B1", "pw")

    def tearDown(self):
        self._tmp.cleanup()

    def _reconciler(self, remote=None, on_change=None):
        return BalanceSheetReconciler(self.session, self.ledger, self.summaries, self.archive, remote, on_change)

    def _print(self, branch, label, qty, price):
        lines = [LineItem(label, Decimal(qty), Decimal(price))]
        breakdown = calculate_breakdown(lines, 0, "fixed", 0)
        bill_id = self.archive.save(branch, {
            "bill_code": "BILL-X",
            "line_items": lines,
            "tax_rate": Decimal("0"),
            "discount_type": "fixed",
            "discount_value": Decimal("0"),
            "breakdown": breakdown,
        })
        entry = self.ledger.append(branch, bill_id, breakdown.final_total)
        self.summaries.increment(branch, entry.day_key, breakdown.final_total)

    def test_remote_answer_wins(self):
        self._print("B1", "Tea", "1", "10")
        remote = FakeRemote([RemoteDailyTotal("2024-03-01", 20000, (("Tea", 2),))])
        view = self._reconciler(remote).refresh()
        self.assertEqual(view.source, SOURCE_REMOTE)
        self.assertEqual(view.available_days, ["2024-03-01"])
        self.assertEqual(view.selected_day, "2024-03-01")
        self.assertEqual(view.day_total, Decimal("200.00"))
        self.assertEqual(view.item_quantities, {"Tea": Decimal(2)})

    def test_remote_days_sorted_newest_first(self):
        remote = FakeRemote([
            RemoteDailyTotal("2024-02-28", 100),
            RemoteDailyTotal("2024-03-01", 300),
            RemoteDailyTotal("2024-02-29", 200),
        ])
        view = self._reconciler(remote).refresh()
        self.assertEqual(view.available_days, ["2024-03-01", "2024-02-29", "2024-02-28"])
        self.assertEqual(view.day_total, Decimal("3.00"))

    def test_remote_failure_falls_back_to_local(self):
        self._print("B1", "Tea", "2", "75")
        self._print("B1", "Coffee", "1", "50")
        view = self._reconciler(FakeRemote(error=RemoteUnavailable("offline"))).refresh()
        self.assertEqual(view.source, SOURCE_LOCAL)
        self.assertEqual(view.selected_day, "2024-03-01")
        self.assertEqual(view.day_total, Decimal("200"))
        self.assertEqual(view.item_quantities, {"Tea": Decimal("2"), "Coffee": Decimal("1")})

    def test_empty_remote_falls_back_to_local(self):
        self._print("B1", "Tea", "1", "10")
        view = self._reconciler(FakeRemote([])).refresh()
        self.assertEqual(view.source, SOURCE_LOCAL)
        self.assertEqual(view.day_total, Decimal("10"))

    def test_no_remote_configured(self):
        self._print("B1", "Tea", "1", "10")
        view = self._reconciler(None).refresh()
        self.assertEqual(view.source, SOURCE_LOCAL)

    def test_selected_day_missing_from_remote_uses_local(self):
        self._print("B1", "Tea", "1", "10")
        remote = FakeRemote([RemoteDailyTotal("2024-02-29", 500)])
        view = self._reconciler(remote).refresh("2024-03-01")
        self.assertEqual(view.available_days, ["2024-02-29"])
        self.assertEqual(view.source, SOURCE_LOCAL)
        self.assertEqual(view.day_total, Decimal("10"))

    def test_select_day_reuses_remote_answer(self):
        remote = FakeRemote([RemoteDailyTotal("2024-03-01", 100), RemoteDailyTotal("2024-02-29", 250)])
        rec = self._reconciler(remote)
        rec.refresh()
        view = rec.select_day("2024-02-29")
        self.assertEqual(remote.calls, 1)
        self.assertEqual(view.day_total, Decimal("2.50"))

    def test_empty_branch(self):
        view = self._reconciler(None).refresh()
        self.assertEqual(view.available_days, [])
        self.assertIsNone(view.selected_day)
        self.assertEqual(view.day_total, Decimal("0"))

    def test_other_branch_data_not_visible(self):
        self._print("B2", "Tea", "1", "10")
        view = self._reconciler(None).refresh()
        self.assertEqual(view.available_days, [])

    def test_logged_out_view_is_empty(self):
        self.session.logout()
        view = self._reconciler(None).refresh()
        self.assertIsNone(view.branch)

    def test_branch_switch_resets_selection(self):
        self._print("B1", "Tea", "1", "10")
        self.now = local_ms(2024, 3, 5, 12, 0)
        self._print("B2", "Tea", "1", "20")
        rec = self._reconciler(None)
        self.assertEqual(rec.refresh().selected_day, "2024-03-01")
        self.session.login("B2", "pw")
        view = rec.refresh()
        self.assertEqual(view.branch, "B2")
        self.assertEqual(view.selected_day, "2024-03-05")

    def test_storage_events_from_other_till_rebuild_locally(self):
        views = []
        remote = FakeRemote([RemoteDailyTotal("2024-03-01", 99900)])
        rec = self._reconciler(remote, on_change=views.append)
        unsubscribe = rec.listen(self.storage)
        try:
            rec.refresh()
            other_till = LocalStorage(self.db_path)
            LedgerStore(other_till, lambda: self.now).append("B1", "bill-x", Decimal("42"))
        finally:
            unsubscribe()
        self.assertEqual(remote.calls, 1)
        self.assertEqual(views[0].source, SOURCE_REMOTE)
        self.assertEqual(views[-1].source, SOURCE_LOCAL)
        self.assertEqual(views[-1].day_total, Decimal("42"))

    def test_events_for_other_keys_are_ignored(self):
        views = []
        rec = self._reconciler(None, on_change=views.append)
        unsubscribe = rec.listen(self.storage)
        try:
            other_till = LocalStorage(self.db_path)
            LedgerStore(other_till, lambda: self.now).append("B2", "bill-y", Decimal("1"))
            other_till.set_item("unrelated", "x")
        finally:
            unsubscribe()
        self.assertEqual(views, [])


if __name__ == "__main__":
    unittest.main()
