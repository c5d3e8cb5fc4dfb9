import datetime as dt
import os
import tempfile
import threading
import unittest

import pos_server
from branch_storage import LocalStorage
from pos_service import PosService
from remote_ledger import RemoteUnavailable
from test_pos_service import FakeRemote


class PosServerTest(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.remote = FakeRemote()
        now = int(dt.datetime(2024, 3, 1, 12, 0).timestamp() * 1000)
        self.service = PosService(
            LocalStorage(os.path.join(self._tmp.name, "pos.db")),
            credentials={"bachupally": "branch1"},
            remote=self.remote,
            clock=lambda: now,
            fixed_print_locations={},
        )
        pos_server.set_service(self.service)
        pos_server.app.config["TESTING"] = True
        self.client = pos_server.app.test_client()

    def tearDown(self):
        pos_server.set_service(None)
        self.service.close()
        self._tmp.cleanup()

    def _login(self):
        resp = self.client.post("/api/branch/login", json={"username": "Bachupally", "password": "branch1"})
        self.assertEqual(resp.status_code, 200)
        return resp.get_json()

    def _print(self, items):
        resp = self.client.post("/api/bills/print", json={
            "lineItems": items,
            "taxRate": "0",
            "discountType": "fixed",
            "discountValue": "0",
        })
        if self.service.last_remote_push is not None:
            self.service.last_remote_push.wait(2)
        return resp

    def test_login_and_branch_status(self):
        self.assertEqual(self._login(), {"status": "success", "branch": "bachupally"})
        body = self.client.get("/api/branch").get_json()
        self.assertTrue(body["authenticated"])
        self.assertEqual(body["branch"], "bachupally")

    def test_bad_login(self):
        resp = self.client.post("/api/branch/login", json={"username": "bachupally", "password": "nope"})
        self.assertEqual(resp.status_code, 401)
        self.assertEqual(resp.get_json()["status"], "error")
        resp = self.client.post("/api/branch/login", json={})
        self.assertEqual(resp.status_code, 400)

    def test_logout(self):
        self._login()
        self.assertEqual(self.client.post("/api/branch/logout").status_code, 200)
        self.assertFalse(self.client.get("/api/branch").get_json()["authenticated"])

    def test_branch_scoped_endpoints_need_login(self):
        for path in ("/api/bills", "/api/balance-sheet", "/api/bill-defaults"):
            resp = self.client.get(path)
            self.assertEqual(resp.status_code, 401, path)
            self.assertEqual(resp.get_json()["status"], "error")
        resp = self._print([{"label": "Tea", "quantity": "1", "unitPrice": "10"}])
        self.assertEqual(resp.status_code, 401)

    def test_catalog(self):
        items = self.client.get("/api/catalog").get_json()["items"]
        self.assertTrue(items)
        self.assertEqual(set(items[0]), {"id", "name", "unitPrice", "category", "outOfStock"})

    def test_print_and_read_back(self):
        self._login()
        resp = self._print([{"label": "Tea", "quantity": "1", "unitPrice": "150.00"}])
        self.assertEqual(resp.status_code, 200)
        bill = resp.get_json()["bill"]
        self.assertEqual(bill["breakdown"]["finalTotal"], "150.00")
        self._print([{"label": "Coffee", "quantity": "2", "unitPrice": "25.00"}])

        bills = self.client.get("/api/bills").get_json()["bills"]
        self.assertEqual(len(bills), 2)
        self.assertEqual(self.client.get(f"/api/bills/{bill['id']}").get_json()["bill"]["id"], bill["id"])
        self.assertEqual(self.client.get("/api/bills?day=2024-03-02").get_json()["bills"], [])

        sheet = self.client.get("/api/balance-sheet?day=2024-03-01").get_json()["balanceSheet"]
        self.assertEqual(sheet["selectedDay"], "2024-03-01")
        self.assertEqual(sheet["dayTotal"], "200.00")
        self.assertEqual(sheet["source"], "local")
        self.assertEqual(sheet["itemQuantities"][0], {"label": "Coffee", "quantity": "2"})

    def test_concurrent_print_requests(self):
        self._login()
        codes = []

        def post():
            client = pos_server.app.test_client()
            resp = client.post("/api/bills/print", json={
                "lineItems": [{"label": "Tea", "quantity": "1", "unitPrice": "10.00"}],
                "discountType": "fixed",
            })
            codes.append(resp.status_code)

        threads = [threading.Thread(target=post) for _ in range(16)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(30)
        self.service.last_remote_push.wait(5)
        self.assertEqual(codes, [200] * 16)
        self.assertEqual(len(self.client.get("/api/bills").get_json()["bills"]), 16)
        self.assertEqual(len(self.service.ledger.entries_for_day("bachupally", "2024-03-01")), 16)
        sheet = self.client.get("/api/balance-sheet?day=2024-03-01").get_json()["balanceSheet"]
        self.assertEqual(sheet["dayTotal"], "160.00")
        self.assertEqual(self.remote.saved[-1][2], 16000)

    def test_print_validation(self):
        self._login()
        self.assertEqual(self._print("nope").status_code, 400)
        self.assertEqual(self._print([{"label": "  ", "quantity": "1", "unitPrice": "1"}]).status_code, 400)
        resp = self.client.post("/api/bills/print", json={
            "lineItems": [{"label": "Tea", "quantity": "1", "unitPrice": "1"}],
            "discountType": "bogo",
        })
        self.assertEqual(resp.status_code, 400)

    def test_unknown_bill(self):
        self._login()
        self.assertEqual(self.client.get("/api/bills/missing").status_code, 404)

    def test_clear_daily_totals(self):
        self._login()
        self._print([{"label": "Tea", "quantity": "1", "unitPrice": "10"}])
        resp = self.client.delete("/api/daily-totals")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(self.remote.cleared, ["bachupally"])
        sheet = self.client.get("/api/balance-sheet").get_json()["balanceSheet"]
        self.assertEqual(sheet["availableDays"], [])

    def test_clear_daily_totals_remote_failure(self):
        self._login()
        self.remote.clear_error = RemoteUnavailable("offline")
        resp = self.client.delete("/api/daily-totals")
        self.assertEqual(resp.status_code, 502)

    def test_bill_defaults(self):
        self._login()
        self.assertEqual(
            self.client.get("/api/bill-defaults").get_json()["defaults"],
            {"receiptStyle": "classic"},
        )
        resp = self.client.put("/api/bill-defaults", json={"receiptStyle": "compact", "printLocationAddress": " Main Road "})
        self.assertEqual(resp.status_code, 200)
        if self.service.last_remote_push is not None:
            self.service.last_remote_push.wait(2)
        self.assertEqual(
            self.client.get("/api/bill-defaults").get_json()["defaults"],
            {"receiptStyle": "compact", "printLocationAddress": "Main Road"},
        )
        resp = self.client.put("/api/bill-defaults", json={"receiptStyle": "fancy"})
        self.assertEqual(resp.status_code, 400)


if __name__ == "__main__":
    unittest.main()
