"""
Client for the remote (authoritative) daily totals ledger.

The remote keeps one record per branch and day with the revenue in minor
units (paise/cents) and integer product quantities. It is only reachable
while a remote session is configured (REMOTE_LEDGER_URL); every failure is
reported as RemoteUnavailable so callers can fall back to local data.

Env vars:
  REMOTE_LEDGER_URL         base URL, e.g. https://ledger.example.com (unset: no remote)
  REMOTE_LEDGER_API_KEY     token key
  REMOTE_LEDGER_API_SECRET  token secret
  REMOTE_LEDGER_TIMEOUT     seconds per request (default: 5)
"""
import logging
import os
import queue
import threading
import urllib.parse
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import requests

logger = logging.getLogger(__name__)

try:
    DEFAULT_TIMEOUT = float(os.environ.get("REMOTE_LEDGER_TIMEOUT", "5"))
except ValueError:
    DEFAULT_TIMEOUT = 5.0


class RemoteUnavailable(Exception):
    """The remote ledger could not be reached or answered with an error."""


def to_minor_units(amount: Any) -> int:
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(value: int) -> Decimal:
    return (Decimal(int(value)) / Decimal(100)).quantize(Decimal("0.01"))


@dataclass(frozen=True)
class RemoteDailyTotal:
    date: str
    total_revenue: int
    product_quantities: Tuple[Tuple[str, int], ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date,
            "totalRevenue": self.total_revenue,
            "productQuantities": [[label, qty] for label, qty in self.product_quantities],
        }


@dataclass(frozen=True)
class UserProfile:
    name: str
    bill_print_location: str = ""


def _parse_quantities(raw: Any) -> Tuple[Tuple[str, int], ...]:
    if raw is None:
        return ()
    pairs = []
    for pair in raw:
        label, qty = pair
        pairs.append((str(label), int(qty)))
    return tuple(pairs)


def _parse_daily_total(date: Optional[str], data: Any) -> RemoteDailyTotal:
    try:
        return RemoteDailyTotal(
            date=str(date or data["date"]),
            total_revenue=int(data["totalRevenue"]),
            product_quantities=_parse_quantities(data.get("productQuantities")),
        )
    except (KeyError, TypeError, ValueError, AttributeError) as exc:
        raise RemoteUnavailable(f"Malformed daily total from remote: {data!r}") from exc


class RemoteLedger:
    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = (base_url or "").rstrip("/") or None
        self.api_key = api_key
        self.api_secret = api_secret
        self.timeout = timeout
        self.session = session or requests.Session()

    @classmethod
    def from_env(cls) -> "RemoteLedger":
        return cls(
            base_url=os.environ.get("REMOTE_LEDGER_URL") or None,
            api_key=os.environ.get("REMOTE_LEDGER_API_KEY") or None,
            api_secret=os.environ.get("REMOTE_LEDGER_API_SECRET") or None,
        )

    @property
    def configured(self) -> bool:
        return bool(self.base_url)

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if self.api_key and self.api_secret:
            headers["Authorization"] = f"token {self.api_key}:{self.api_secret}"
        return headers

    def _branch_path(self, branch: str, *parts: str) -> str:
        segments = [urllib.parse.quote(branch, safe="")] + [urllib.parse.quote(p, safe="") for p in parts]
        return "/api/branches/" + "/".join(segments)

    def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None, allow_missing: bool = False):
        if not self.configured:
            raise RemoteUnavailable("Remote ledger is not configured")
        url = self.base_url + path
        try:
            resp = self.session.request(method, url, json=payload, headers=self._headers(), timeout=self.timeout)
        except requests.RequestException as exc:
            raise RemoteUnavailable(f"{method} {path} failed: {exc}") from exc
        if allow_missing and resp.status_code == 404:
            return None
        if resp.status_code >= 400:
            raise RemoteUnavailable(f"{method} {path} failed: status={resp.status_code} body={resp.text[:200]}")
        if resp.status_code == 204 or not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as exc:
            raise RemoteUnavailable(f"Bad JSON from {method} {path}: {resp.text[:200]}") from exc

    # ---------- DAILY TOTALS ----------
    def get_balance_sheet(self, branch: str) -> List[Tuple[str, RemoteDailyTotal]]:
        body = self._request("GET", self._branch_path(branch, "daily-totals"))
        rows = body.get("data") if isinstance(body, dict) else None
        if not isinstance(rows, list):
            raise RemoteUnavailable(f"Malformed balance sheet from remote: {body!r}")
        totals = [_parse_daily_total(None, row) for row in rows]
        return [(t.date, t) for t in totals]

    def get_daily_total(self, branch: str, date: str) -> Optional[RemoteDailyTotal]:
        body = self._request("GET", self._branch_path(branch, "daily-totals", date), allow_missing=True)
        if not isinstance(body, dict) or not body.get("data"):
            return None
        return _parse_daily_total(date, body["data"])

    def save_daily_total(
        self,
        branch: str,
        date: str,
        total_revenue: int,
        product_quantities: Iterable[Tuple[str, int]],
    ) -> None:
        payload = {
            "totalRevenue": int(total_revenue),
            "productQuantities": [[label, int(qty)] for label, qty in product_quantities],
        }
        self._request("PUT", self._branch_path(branch, "daily-totals", date), payload)

    def clear_all_daily_totals(self, branch: str) -> None:
        self._request("DELETE", self._branch_path(branch, "daily-totals"))

    # ---------- PROFILE ----------
    def get_caller_user_profile(self, branch: str) -> Optional[UserProfile]:
        body = self._request("GET", self._branch_path(branch, "profile"), allow_missing=True)
        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, dict):
            return None
        return UserProfile(str(data.get("name") or ""), str(data.get("billPrintLocation") or ""))

    def save_caller_user_profile(self, branch: str, profile: UserProfile) -> None:
        payload = {"name": profile.name, "billPrintLocation": profile.bill_print_location}
        self._request("PUT", self._branch_path(branch, "profile"), payload)


class PushWorker:
    """Runs remote calls one at a time, in submission order, on a daemon thread.

    Submitting never blocks the caller and a failure only reaches the log.
    Delivery is at most once: nothing is retried.
    """

    def __init__(self, name: str = "remote-push"):
        self.name = name
        self._queue = queue.Queue()
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

    def submit(self, fn: Callable[..., Any], *args: Any, description: str = "remote call") -> threading.Event:
        """Queue ``fn(*args)``; the returned event is set once it has run."""
        done = threading.Event()
        self._queue.put((fn, args, description, done))
        with self._lock:
            if self._thread is None:
                self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
                self._thread.start()
        return done

    def _run(self):
        while True:
            fn, args, description, done = self._queue.get()
            try:
                fn(*args)
            except Exception as exc:
                logger.warning("%s failed: %s", description, exc)
            else:
                logger.debug("%s done", description)
            finally:
                done.set()
