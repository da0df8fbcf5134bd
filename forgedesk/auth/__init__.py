"""
ForgeDesk — Admin Authentication, Sessions & Audit
Password hashing, login rate limiting, IP/user-agent bound sessions,
permission checks and the audit trail.

Session rules:
  - valid while age < SESSION_MAX_AGE_HOURS and inactivity < SESSION_INACTIVITY_HOURS
  - bound to the IP and user agent that created it; a mismatch evicts the
    session and records SECURITY_VIOLATION
  - every validated use refreshes lastActivity

Login is gated twice: per client IP (check_rate_limit) and per account
(ACCOUNT_LOCKOUT_ATTEMPTS wrong passwords lock it until an admin unlocks it).

Expected outcomes (unknown id, expired session, rate-limited IP) are
returned as None / {"allowed": False}, never raised.
"""
import math
import secrets
import threading
from datetime import datetime, timedelta

import bcrypt
from fastapi import Request, HTTPException

from forgedesk.config import (
    SESSION_MAX_AGE_HOURS, SESSION_INACTIVITY_HOURS,
    LOGIN_RATE_LIMIT_ATTEMPTS, LOGIN_RATE_LIMIT_WINDOW_MINUTES, ACCOUNT_LOCKOUT_ATTEMPTS,
    DEFAULT_ADMIN_PERMISSIONS, SYSTEM_ADMIN, SESSION_COOKIE_NAME,
    ADMIN_EMAIL, ADMIN_PASSWORD, ADMIN_ROLE,
)
from forgedesk.db import SessionStore, AuditLog, RateLimitStore

# ============================================================
# PASSWORD HASHING
# ============================================================
def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt()).decode()

def verify_password(password: str, hashed: str) -> bool:
    return bcrypt.checkpw(password.encode(), hashed.encode())


# ============================================================
# ADMIN ACCOUNTS
# ============================================================
class AccountLockedError(Exception):
    """Raised for any login attempt against a locked admin account."""

    def __init__(self, email: str):
        super().__init__("Account is locked. Please contact system administrator.")
        self.email = email


_accounts_lock = threading.RLock()

def build_admin_accounts(email: str = ADMIN_EMAIL, password: str = ADMIN_PASSWORD,
                         role: str = ADMIN_ROLE) -> dict:
    """Configured admin accounts keyed by lowercase email."""
    return {email.lower(): {"email": email, "name": "ForgeDesk Admin", "role": role,
                            "passwordHash": hash_password(password),
                            "loginAttempts": 0, "isLocked": False}}

def authenticate_admin(accounts: dict, email: str, password: str,
                       max_attempts: int = ACCOUNT_LOCKOUT_ATTEMPTS):
    """
    Return the account for a correct email/password pair, else None.
    Wrong passwords count against the account; reaching max_attempts locks it.
    A locked account raises AccountLockedError, even with the right password.
    """
    account = accounts.get((email or "").lower())
    if not account:
        return None
    with _accounts_lock:
        if account.get("isLocked"):
            raise AccountLockedError(account["email"])
        if not verify_password(password or "", account["passwordHash"]):
            account["loginAttempts"] = account.get("loginAttempts", 0) + 1
            if account["loginAttempts"] >= max_attempts:
                account["isLocked"] = True
            return None
        account["loginAttempts"] = 0
        return account

def unlock_admin_account(accounts: dict, email: str) -> bool:
    account = accounts.get((email or "").lower())
    if not account:
        return False
    with _accounts_lock:
        account["isLocked"] = False
        account["loginAttempts"] = 0
    return True


# ============================================================
# SESSION & AUDIT MANAGER
# ============================================================
class SessionManager:
    def __init__(self, sessions: SessionStore = None, audit: AuditLog = None,
                 attempts: RateLimitStore = None, clock=datetime.now,
                 max_age=timedelta(hours=SESSION_MAX_AGE_HOURS),
                 inactivity=timedelta(hours=SESSION_INACTIVITY_HOURS),
                 max_attempts: int = LOGIN_RATE_LIMIT_ATTEMPTS,
                 window=timedelta(minutes=LOGIN_RATE_LIMIT_WINDOW_MINUTES)):
        self.sessions = sessions or SessionStore()
        self.audit = audit or AuditLog()
        self.attempts = attempts or RateLimitStore()
        self.clock = clock
        self.max_age = max_age
        self.inactivity = inactivity
        self.max_attempts = max_attempts
        self.window = window

    # ── rate limiting ──
    def check_rate_limit(self, ip: str) -> dict:
        """Count a login attempt from ip. Denied attempts do not move the window."""
        key = f"login_{ip}"
        now = self.clock()
        with self.attempts.lock:
            attempt = self.attempts.get(key)
            if attempt is None or now - attempt["lastAttempt"] > self.window:
                self.attempts.put(key, 1, now)
                return {"allowed": True}
            if attempt["count"] >= self.max_attempts:
                remaining = (self.window - (now - attempt["lastAttempt"])).total_seconds()
                return {"allowed": False, "retryAfter": max(1, math.ceil(remaining))}
            self.attempts.put(key, attempt["count"] + 1, now)
            return {"allowed": True}

    # ── session lifecycle ──
    def create_session(self, email: str, ip: str, user_agent: str, permissions: list = None) -> str:
        session_id = f"admin_{secrets.token_urlsafe(32)}"
        now = self.clock().isoformat()
        self.sessions.put({
            "id": session_id,
            "email": email,
            "loginTime": now,
            "lastActivity": now,
            "ipAddress": ip,
            "userAgent": user_agent,
            "permissions": list(DEFAULT_ADMIN_PERMISSIONS if permissions is None else permissions),
        })
        self.log_action(email, "LOGIN", "Admin logged in successfully", ip, user_agent)
        return session_id

    def _is_expired(self, session: dict, now: datetime) -> bool:
        age = now - datetime.fromisoformat(session["loginTime"])
        idle = now - datetime.fromisoformat(session["lastActivity"])
        return age >= self.max_age or idle >= self.inactivity

    def validate_session(self, session_id: str, ip: str, user_agent: str):
        """Return a copy of the session if it is usable from this client, else None."""
        if not session_id:
            return None
        now = self.clock()
        violation = None
        with self.sessions.lock:
            session = self.sessions.get(session_id)
            if session is None:
                return None
            if self._is_expired(session, now):
                self.sessions.remove(session_id)
                return None
            if session["ipAddress"] != ip or session["userAgent"] != user_agent:
                self.sessions.remove(session_id)
                violation = session
            else:
                session["lastActivity"] = now.isoformat()
                return dict(session, permissions=list(session["permissions"]))

        print(f"[Security] Session {session_id[:14]}… for {violation['email']} presented from "
              f"{ip} (bound to {violation['ipAddress']}); session revoked")
        self.log_action(violation["email"], "SECURITY_VIOLATION",
                        "Session hijacking attempt detected", ip, user_agent)
        return None

    def extend_session(self, session_id: str):
        """Refresh lastActivity for a known, unexpired session."""
        now = self.clock()
        with self.sessions.lock:
            session = self.sessions.get(session_id)
            if session is None or self._is_expired(session, now):
                return None
            session["lastActivity"] = now.isoformat()
            return dict(session)

    def revoke_session(self, session_id: str) -> bool:
        session = self.sessions.remove(session_id)
        if session is None:
            return False
        self.log_action(session["email"], "LOGOUT", "Admin session revoked",
                        session["ipAddress"], session["userAgent"])
        return True

    def revoke_all_sessions(self, except_session_id: str = None) -> int:
        revoked = 0
        for sid in self.sessions.ids():
            if sid != except_session_id and self.revoke_session(sid):
                revoked += 1
        return revoked

    def list_active_sessions(self) -> list:
        return self.sessions.snapshot()

    def sweep_expired(self) -> int:
        """Evict every session past its age or inactivity limit."""
        now = self.clock()
        evicted = 0
        for sid in self.sessions.ids():
            if self.sessions.remove_if(sid, lambda s: self._is_expired(s, now)):
                evicted += 1
        return evicted

    # ── permissions ──
    @staticmethod
    def has_permission(session: dict, permission: str) -> bool:
        granted = session.get("permissions") or []
        return permission in granted or SYSTEM_ADMIN in granted

    # ── audit ──
    def log_action(self, email: str, action: str, details: str, ip: str, user_agent: str) -> dict:
        entry = {
            "id": f"audit_{secrets.token_hex(6)}",
            "adminEmail": email,
            "action": action,
            "details": details,
            "timestamp": self.clock().isoformat(),
            "ipAddress": ip,
            "userAgent": user_agent,
        }
        self.audit.append(entry)
        return entry

    def get_audit_logs(self, limit: int = 100, offset: int = 0) -> list:
        return self.audit.newest_first(limit, offset)


# ============================================================
# REQUEST HELPERS
# ============================================================
def get_client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    for header in ("x-real-ip", "cf-connecting-ip"):
        if request.headers.get(header):
            return request.headers[header]
    return request.client.host if request.client else "unknown"

def get_user_agent(request: Request) -> str:
    return request.headers.get("user-agent", "unknown")

def get_session_token(request: Request) -> str:
    token = request.cookies.get(SESSION_COOKIE_NAME)
    if token:
        return token
    auth = request.headers.get("Authorization", "")
    return auth[7:] if auth.startswith("Bearer ") else ""


# ============================================================
# PERMISSION DEPENDENCY
# ============================================================
def require_permission(permission: str = None):
    """Dependency: require a valid admin session, holding `permission` when one is given."""
    async def checker(request: Request) -> dict:
        token = get_session_token(request)
        if not token:
            raise HTTPException(401, "Not authenticated")
        manager = request.app.state.services.sessions
        session = manager.validate_session(token, get_client_ip(request), get_user_agent(request))
        if not session:
            raise HTTPException(401, "Session invalid")
        if permission and not manager.has_permission(session, permission):
            raise HTTPException(403, "Insufficient permissions")
        return session
    return checker
