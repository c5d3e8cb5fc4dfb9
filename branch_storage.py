"""
Branch-scoped local storage for the POS billing ledger.

The till keeps its working state in a small string key/value table inside a
SQLite file (``POS_DB_PATH``). Every record that belongs to a branch lives
under a namespaced key, so switching branches never touches another branch's
bills, ledger, summaries or print defaults.

Pieces:
  LocalStorage      key/value store + change notifications between instances
  scoped_key        branch namespacing for the four base stores
  BranchSession     active branch slot (login / logout / hydrate)
  migrate_legacy_data_to_branch
                    one-time copy of pre-branch (global) keys into a branch
"""
import datetime as dt
import logging
import os
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

ACTIVE_BRANCH_KEY = "branchAuthUser"

SAVED_BILLS = "saved_bills"
DAILY_LEDGER = "daily_ledger"
DAILY_SUMMARY = "daily_summary"
BILL_DEFAULTS = "bill_defaults"
MIGRATION_MARKER = "migration_complete"

BASE_KEYS = (SAVED_BILLS, DAILY_LEDGER, DAILY_SUMMARY, BILL_DEFAULTS)

# Global keys written before storage was partitioned per branch
LEGACY_KEYS = {
    SAVED_BILLS: "varshini_saved_bills",
    DAILY_LEDGER: "varshini_daily_totals_ledger",
    DAILY_SUMMARY: "varshini_daily_summary",
    BILL_DEFAULTS: "varshini_bill_format_defaults",
}

DEFAULT_CREDENTIALS = {"bachupally": "branch1"}


class ConfigurationError(RuntimeError):
    """Raised when a branch-scoped operation has no branch to work with."""


class StorageError(Exception):
    """The underlying SQLite store failed."""


class StorageWriteError(StorageError):
    """The underlying store rejected a write."""


@dataclass(frozen=True)
class StorageEvent:
    key: str
    old_value: Optional[str]
    new_value: Optional[str]


# ---------- KEY NAMESPACE ----------
def _require_branch_name(branch: Optional[str]) -> str:
    if not isinstance(branch, str) or not branch.strip():
        raise ConfigurationError("No active branch for branch-scoped storage")
    return branch


def scoped_key(branch: Optional[str], base_name: str) -> str:
    """Map (branch, base_name) to a storage key.

    The branch length is part of the key, so no two distinct pairs can
    produce the same string even when the branch name contains ``_``.
    """
    branch = _require_branch_name(branch)
    if not base_name:
        raise ValueError("base_name is required")
    return f"branch_{len(branch)}:{branch}_{base_name}"


def parse_scoped_key(key: Optional[str]) -> Optional[Tuple[str, str]]:
    """Inverse of :func:`scoped_key`; returns None for keys outside the namespace."""
    if not key or not key.startswith("branch_"):
        return None
    rest = key[len("branch_"):]
    length_part, sep, tail = rest.partition(":")
    if not sep or not length_part.isdigit():
        return None
    n = int(length_part)
    if n <= 0 or len(tail) < n + 2 or tail[n] != "_":
        return None
    return tail[:n], tail[n + 1:]


def is_daily_totals_key_for_branch(key: Optional[str], branch: Optional[str]) -> bool:
    """True when ``key`` is the ledger or summary record of ``branch``."""
    parsed = parse_scoped_key(key)
    if not parsed or not branch:
        return False
    key_branch, base_name = parsed
    return key_branch == branch and base_name in (DAILY_LEDGER, DAILY_SUMMARY)


# ---------- LOCAL STORAGE ----------
_LISTENERS_LOCK = threading.Lock()
_LISTENERS: Dict[str, List[Tuple[str, Callable[[StorageEvent], None]]]] = {}

# One write lock per database file, shared by every instance in this process
_WRITE_LOCKS: Dict[str, threading.RLock] = {}


def _iso_now() -> str:
    return dt.datetime.utcnow().replace(microsecond=0).isoformat() + "Z"


class LocalStorage:
    """String key/value store shared by every instance opened on the same file.

    Mutations are announced to listeners registered through *other*
    instances on the same database in this process, the same way a browser
    only fires ``storage`` events in the tabs that did not perform the write.
    Writers in other processes are not observed.

    Read-modify-write sequences (load a JSON record, change it, store it)
    must run under :attr:`lock`, which is shared per database file.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._path_key = os.path.abspath(db_path)
        self._instance_id = uuid.uuid4().hex
        with _LISTENERS_LOCK:
            self.lock = _WRITE_LOCKS.setdefault(self._path_key, threading.RLock())
        try:
            with self._conn() as con:
                con.execute("""
                    CREATE TABLE IF NOT EXISTS local_storage (
                      key         TEXT PRIMARY KEY,
                      value       TEXT NOT NULL,
                      updated_utc TEXT
                    )
                """)
        except sqlite3.Error as exc:
            raise StorageError(f"Cannot open local storage at {db_path}: {exc}") from exc

    @contextmanager
    def _conn(self):
        con = sqlite3.connect(self.db_path, timeout=30)
        con.execute("PRAGMA journal_mode=WAL;")
        try:
            yield con
            con.commit()
        finally:
            con.close()

    def get_item(self, key: str) -> Optional[str]:
        try:
            with self._conn() as con:
                row = con.execute("SELECT value FROM local_storage WHERE key=?", (key,)).fetchone()
        except sqlite3.Error as exc:
            raise StorageError(f"Failed reading {key}: {exc}") from exc
        return row[0] if row else None

    def set_item(self, key: str, value: str) -> None:
        if not isinstance(value, str):
            raise TypeError("LocalStorage values must be strings")
        try:
            with self._conn() as con:
                row = con.execute("SELECT value FROM local_storage WHERE key=?", (key,)).fetchone()
                con.execute(
                    "INSERT OR REPLACE INTO local_storage(key, value, updated_utc) VALUES (?,?,?)",
                    (key, value, _iso_now()),
                )
        except sqlite3.Error as exc:
            raise StorageWriteError(f"Failed writing {key}: {exc}") from exc
        self._notify(StorageEvent(key, row[0] if row else None, value))

    def remove_item(self, key: str) -> None:
        try:
            with self._conn() as con:
                row = con.execute("SELECT value FROM local_storage WHERE key=?", (key,)).fetchone()
                con.execute("DELETE FROM local_storage WHERE key=?", (key,))
        except sqlite3.Error as exc:
            raise StorageWriteError(f"Failed removing {key}: {exc}") from exc
        if row:
            self._notify(StorageEvent(key, row[0], None))

    def keys(self, prefix: str = "") -> List[str]:
        try:
            with self._conn() as con:
                rows = con.execute("SELECT key FROM local_storage ORDER BY key").fetchall()
        except sqlite3.Error as exc:
            raise StorageError(f"Failed listing keys: {exc}") from exc
        return [r[0] for r in rows if r[0].startswith(prefix)]

    def subscribe(self, callback: Callable[[StorageEvent], None]) -> Callable[[], None]:
        """Register ``callback`` for writes made by other instances; returns an unsubscribe function."""
        entry = (self._instance_id, callback)
        with _LISTENERS_LOCK:
            _LISTENERS.setdefault(self._path_key, []).append(entry)

        def unsubscribe() -> None:
            with _LISTENERS_LOCK:
                listeners = _LISTENERS.get(self._path_key, [])
                if entry in listeners:
                    listeners.remove(entry)

        return unsubscribe

    def _notify(self, event: StorageEvent) -> None:
        with _LISTENERS_LOCK:
            targets = [cb for owner, cb in _LISTENERS.get(self._path_key, []) if owner != self._instance_id]
        for cb in targets:
            try:
                cb(event)
            except Exception:
                logger.exception("Storage listener failed for %s", event.key)


# ---------- MIGRATION ----------
def is_migration_complete(storage: LocalStorage, branch: str) -> bool:
    return storage.get_item(scoped_key(branch, MIGRATION_MARKER)) == "true"


def _has_legacy_data(storage: LocalStorage) -> bool:
    return any(storage.get_item(key) is not None for key in LEGACY_KEYS.values())


def _has_branch_scoped_data(storage: LocalStorage, branch: str) -> bool:
    return any(storage.get_item(scoped_key(branch, base)) is not None for base in BASE_KEYS)


def migrate_legacy_data_to_branch(storage: LocalStorage, branch: str) -> bool:
    """Copy legacy global records into ``branch`` once.

    Returns True only when legacy values were actually copied. The marker is
    set once the branch needs no further migration; a storage failure leaves
    it unset so the next login/hydration tries again. Legacy keys are never
    deleted and existing branch records are never overwritten.
    """
    marker_key = scoped_key(branch, MIGRATION_MARKER)
    try:
        with storage.lock:
            if is_migration_complete(storage, branch):
                return False

            if not _has_legacy_data(storage):
                storage.set_item(marker_key, "true")
                return False

            if _has_branch_scoped_data(storage, branch):
                # branch records win over legacy ones
                storage.set_item(marker_key, "true")
                return False

            logger.info("Migrating legacy data to branch: %s", branch)
            for base, legacy_key in LEGACY_KEYS.items():
                raw = storage.get_item(legacy_key)
                if raw is not None:
                    storage.set_item(scoped_key(branch, base), raw)
            storage.set_item(marker_key, "true")
            logger.info("Migration complete for branch: %s", branch)
            return True
    except StorageError:
        logger.exception("Error during migration for branch %s", branch)
        return False


# ---------- BRANCH SESSION ----------
class BranchSession:
    """Holds the active branch for one till and persists it across restarts.

    Consumers receive the session explicitly and resolve the branch through
    :meth:`require_branch`; only login/logout/hydrate/activate mutate it.
    """

    def __init__(self, storage: LocalStorage, credentials: Optional[Dict[str, str]] = None):
        self.storage = storage
        self.credentials = dict(credentials if credentials is not None else DEFAULT_CREDENTIALS)
        self.branch: Optional[str] = None

    @property
    def is_authenticated(self) -> bool:
        return self.branch is not None

    def login(self, username: str, password: str) -> bool:
        """Username is matched case-insensitively, password exactly (both trimmed)."""
        wanted = (username or "").strip().lower()
        given = (password or "").strip()
        for canonical, expected in self.credentials.items():
            if canonical.lower() == wanted and given == expected:
                self.activate(canonical)
                try:
                    self.storage.set_item(ACTIVE_BRANCH_KEY, canonical)
                except StorageWriteError:
                    logger.error("Failed to persist active branch %s", canonical)
                return True
        return False

    def logout(self) -> None:
        self.branch = None
        try:
            self.storage.remove_item(ACTIVE_BRANCH_KEY)
        except StorageWriteError:
            logger.error("Failed to clear persisted active branch")

    def hydrate(self) -> Optional[str]:
        """Restore the persisted active branch, if any."""
        try:
            stored = self.storage.get_item(ACTIVE_BRANCH_KEY)
        except StorageError:
            logger.exception("Failed reading persisted active branch")
            stored = None
        if stored:
            self.activate(stored)
        return self.branch

    def require_branch(self, branch: Optional[str] = None) -> str:
        """Explicit branch first, then the active one; neither is a caller bug."""
        if branch:
            return _require_branch_name(branch)
        return _require_branch_name(self.branch)

    def activate(self, branch: str) -> bool:
        """Make ``branch`` active without a credential check and run its migration.

        Returns True when legacy data was copied into the branch.
        """
        self.branch = _require_branch_name(branch)
        return migrate_legacy_data_to_branch(self.storage, self.branch)
