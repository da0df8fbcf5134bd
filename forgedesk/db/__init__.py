"""
ForgeDesk — Storage Layer
In-memory stores for sessions, audit entries, login attempts and orders.

Each store is an explicit object owned by the app's service container, so
tests build isolated instances. Every store guards its state with a lock;
a durable backend only has to keep the same method surface.
"""
import copy
import threading
from collections import deque

from forgedesk.config import AUDIT_LOG_MAX_ENTRIES


# ============================================================
# SESSION STORE
# ============================================================
class SessionStore:
    """Admin sessions keyed by session id."""

    def __init__(self):
        self.lock = threading.RLock()
        self._sessions = {}

    def put(self, session: dict) -> None:
        with self.lock:
            self._sessions[session["id"]] = session

    def get(self, session_id: str):
        with self.lock:
            return self._sessions.get(session_id)

    def remove(self, session_id: str):
        with self.lock:
            return self._sessions.pop(session_id, None)

    def remove_if(self, session_id: str, predicate) -> bool:
        """Remove a session only if predicate(session) still holds, in one locked step."""
        with self.lock:
            session = self._sessions.get(session_id)
            if session is None or not predicate(session):
                return False
            del self._sessions[session_id]
            return True

    def ids(self) -> list:
        with self.lock:
            return list(self._sessions)

    def snapshot(self) -> list:
        with self.lock:
            return [copy.deepcopy(s) for s in self._sessions.values()]

    def __len__(self):
        with self.lock:
            return len(self._sessions)


# ============================================================
# AUDIT LOG
# ============================================================
class AuditLog:
    """Append-only, capped at the most recent max_entries entries."""

    def __init__(self, max_entries: int = AUDIT_LOG_MAX_ENTRIES):
        self.lock = threading.RLock()
        self._entries = deque(maxlen=max_entries)

    def append(self, entry: dict) -> None:
        with self.lock:
            self._entries.append(entry)

    def newest_first(self, limit: int = 100, offset: int = 0) -> list:
        limit, offset = max(0, int(limit)), max(0, int(offset))
        with self.lock:
            ordered = list(reversed(self._entries))
        return ordered[offset:offset + limit]

    def __len__(self):
        with self.lock:
            return len(self._entries)


# ============================================================
# LOGIN ATTEMPTS
# ============================================================
class RateLimitStore:
    """Per-IP login attempt counters: {"count": int, "lastAttempt": datetime}."""

    def __init__(self):
        self.lock = threading.RLock()
        self._attempts = {}

    def get(self, key: str):
        with self.lock:
            return self._attempts.get(key)

    def put(self, key: str, count: int, last_attempt) -> None:
        with self.lock:
            self._attempts[key] = {"count": count, "lastAttempt": last_attempt}


# ============================================================
# ORDER STORE
# ============================================================
class OrderStore:
    """Orders in insertion order. Orders are never physically deleted."""

    def __init__(self):
        self.lock = threading.RLock()
        self._orders = []

    def add(self, order: dict) -> None:
        with self.lock:
            self._orders.append(order)

    def get(self, order_id: str):
        """Return the live record (callers mutate it under self.lock)."""
        with self.lock:
            return next((o for o in self._orders if o["id"] == order_id), None)

    def find(self, predicate):
        with self.lock:
            return next((o for o in self._orders if predicate(o)), None)

    def all(self) -> list:
        with self.lock:
            return copy.deepcopy(self._orders)

    def __len__(self):
        with self.lock:
            return len(self._orders)


# ============================================================
# UTILITIES
# ============================================================
def _n(val, default=0):
    """Safe numeric conversion: None/empty → default, strings → float."""
    if val is None or val == "":
        return float(default)
    try:
        return float(val)
    except (ValueError, TypeError):
        return float(default)
