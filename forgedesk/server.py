"""
ForgeDesk — Admin Dashboard & Order Management API
Public order endpoints (pricing, checkout, status, payment webhook) and the
session-protected admin surface (orders, analytics, customers, financial,
system sessions/audit, roles).

Responses: {"success": true, ...} on success,
           {"success": false, "error": str} + 400/401/403/404/423/429/500 on failure.
"""
import os, json, hmac, hashlib
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import FastAPI, APIRouter, HTTPException, Request, Depends
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from forgedesk.config import (
    VERSION, PAYMENT_WEBHOOK_SECRET, SESSION_COOKIE_NAME, SESSION_COOKIE_SECURE, SESSION_MAX_AGE_HOURS,
    VIEW_ORDERS, UPDATE_ORDERS, VIEW_CUSTOMERS, MANAGE_REFUNDS, VIEW_ANALYTICS, MANAGE_ROLES, SYSTEM_ADMIN,
)
from forgedesk.auth import (
    SessionManager, AccountLockedError, build_admin_accounts, authenticate_admin, unlock_admin_account,
    require_permission, get_client_ip, get_user_agent, get_session_token,
)
from forgedesk.orders import OrderEngine, OrderValidationError
from forgedesk.pricing import quote, pricing_catalog
from forgedesk.reports import filter_orders, order_stats, analytics, customer_report, financial_summary
from forgedesk.roles import RoleStore, list_permissions
from forgedesk.scheduler import SessionSweeper

# ============================================================
# SERVICES
# ============================================================
class Services:
    """Everything a request handler needs; one instance per app."""

    def __init__(self, clock=datetime.now, admin_accounts: dict = None,
                 webhook_secret: str = PAYMENT_WEBHOOK_SECRET):
        self.clock = clock
        self.sessions = SessionManager(clock=clock)
        self.orders = OrderEngine(clock=clock)
        self.roles = RoleStore(clock=clock)
        self.admin_accounts = admin_accounts if admin_accounts is not None else build_admin_accounts()
        self.webhook_secret = webhook_secret
        self.sweeper = SessionSweeper(self.sessions)


def _services(request: Request) -> Services:
    return request.app.state.services

def _audit(request: Request, session: dict, action: str, details: str):
    _services(request).sessions.log_action(session["email"], action, details,
                                           get_client_ip(request), get_user_agent(request))

def payment_signature(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


# ============================================================
# REQUEST MODELS
# ============================================================
class OrderCreate(BaseModel):
    customerName: str
    customerEmail: str
    company: Optional[str] = None
    phone: Optional[str] = None
    appName: str
    appDescription: str
    framework: str
    complexity: str
    features: List[str] = []
    database: Optional[str] = None
    authentication: List[str] = []
    timeline: str
    deliveryMethod: str
    specialRequirements: Optional[str] = None
    price: Optional[float] = None
    currency: str = "usd"

class QuoteRequest(BaseModel):
    complexity: str
    timeline: str
    features: List[str] = []

class LoginRequest(BaseModel):
    email: str
    password: str

class OrderUpdate(BaseModel):
    orderId: str
    status: Optional[str] = None
    progress: Optional[int] = Field(None, ge=0, le=100)
    deliveryUrl: Optional[str] = None
    adminNotes: Optional[str] = None

class BuildProgress(BaseModel):
    progress: int = Field(0, ge=0, le=100)
    step: Optional[str] = None
    log: Optional[str] = None
    error: Optional[str] = None

class RefundCreate(BaseModel):
    orderId: str
    amount: float = Field(..., gt=0)
    reason: str = Field(..., min_length=10, max_length=500)
    adminNotes: Optional[str] = None

class RefundProcess(BaseModel):
    action: str = Field(..., pattern="^(approve|deny)$")
    adminNotes: Optional[str] = None

class AccountUnlock(BaseModel):
    email: str

class RoleCreate(BaseModel):
    name: str
    description: str = ""
    permissions: List[str] = []
    level: int = 1

class RoleUpdate(BaseModel):
    id: str
    name: Optional[str] = None
    description: Optional[str] = None
    permissions: Optional[List[str]] = None
    level: Optional[int] = None


router = APIRouter()

# ============================================================
# PUBLIC: HEALTH & PRICING
# ============================================================
@router.get("/api/health")
async def health(request: Request):
    svc = _services(request)
    return {"success": True, "status": "ok", "product": "ForgeDesk", "version": VERSION,
            "orders": len(svc.orders.store), "activeSessions": len(svc.sessions.sessions),
            "sweeper": "running" if svc.sweeper.running else "stopped"}

@router.get("/api/pricing")
async def get_pricing():
    return {"success": True, **pricing_catalog()}

@router.post("/api/pricing/quote")
async def price_quote(body: QuoteRequest):
    try:
        return {"success": True, "quote": quote(body.complexity, body.timeline, body.features)}
    except ValueError as e:
        raise HTTPException(400, str(e))


# ============================================================
# PUBLIC: ORDERS
# ============================================================
@router.post("/api/orders")
async def create_order(body: OrderCreate, request: Request):
    try:
        order = _services(request).orders.create_order(body.model_dump())
    except OrderValidationError as e:
        return JSONResponse({"success": False, "error": str(e), "details": e.details}, status_code=400)
    return {"success": True, "orderId": order["id"], "checkoutSessionId": order["paymentReference"],
            "price": order["price"], "order": order,
            "message": "Order created successfully. Redirecting to payment..."}

@router.get("/api/orders")
async def get_order(request: Request, orderId: str = None, sessionId: str = None):
    if not orderId and not sessionId:
        raise HTTPException(400, "Order ID or Session ID is required")
    engine = _services(request).orders
    order = engine.find_by_id(orderId) if orderId else engine.find_by_payment_reference(sessionId)
    if not order:
        raise HTTPException(404, "Order not found")
    return {"success": True, "order": order}

@router.get("/api/orders/status")
async def order_status(request: Request, orderId: str = None):
    if not orderId:
        raise HTTPException(400, "Order ID is required")
    engine = _services(request).orders
    order = engine.find_by_id(orderId)
    if not order:
        raise HTTPException(404, "Order not found")
    return {"success": True, "order": engine.status_view(order)}

@router.post("/api/orders/webhook")
async def payment_webhook(request: Request):
    svc = _services(request)
    body = await request.body()
    signature = request.headers.get("x-payment-signature")
    if not signature:
        raise HTTPException(400, "Missing payment signature")
    if not hmac.compare_digest(signature, payment_signature(svc.webhook_secret, body)):
        print("[Webhook] Signature verification failed")
        raise HTTPException(400, "Invalid signature")
    try:
        event = json.loads(body)
    except json.JSONDecodeError:
        raise HTTPException(400, "Invalid JSON payload")
    if not isinstance(event, dict):
        raise HTTPException(400, "Invalid event payload")
    order = svc.orders.handle_payment_event(event)
    return {"success": True, "received": True, "orderId": order["id"] if order else None}


# ============================================================
# ADMIN: AUTH
# ============================================================
@router.post("/api/admin/login")
async def admin_login(body: LoginRequest, request: Request):
    svc = _services(request)
    ip, ua = get_client_ip(request), get_user_agent(request)
    gate = svc.sessions.check_rate_limit(ip)
    if not gate["allowed"]:
        svc.sessions.log_action(body.email, "LOGIN_RATE_LIMITED",
                                f"Too many login attempts from {ip}", ip, ua)
        raise HTTPException(429, f"Too many login attempts. Try again in {gate['retryAfter']} seconds.",
                            headers={"Retry-After": str(gate["retryAfter"])})

    try:
        account = authenticate_admin(svc.admin_accounts, body.email, body.password)
    except AccountLockedError as e:
        svc.sessions.log_action(e.email, "LOGIN_BLOCKED", "Login attempt on locked account", ip, ua)
        raise HTTPException(423, str(e))
    if not account:
        svc.sessions.log_action(body.email, "LOGIN_FAILED", "Invalid credentials", ip, ua)
        known = svc.admin_accounts.get(body.email.lower())
        if known and known.get("isLocked"):
            print(f"[Security] Account {known['email']} locked after {known['loginAttempts']} failed logins")
            svc.sessions.log_action(known["email"], "ACCOUNT_LOCKED",
                                    f"Locked after {known['loginAttempts']} failed attempts", ip, ua)
        raise HTTPException(401, "Invalid credentials")

    permissions = svc.roles.permissions_for_role(account["role"])
    if not permissions:
        svc.sessions.log_action(account["email"], "LOGIN_FAILED",
                                f"Role '{account['role']}' grants no permissions", ip, ua)
        raise HTTPException(403, "Role grants no permissions")
    session_id = svc.sessions.create_session(account["email"], ip, ua, permissions)
    response = JSONResponse({
        "success": True,
        "admin": {"email": account["email"], "name": account["name"], "role": account["role"],
                  "permissions": permissions},
        "sessionId": session_id,
    })
    response.set_cookie(SESSION_COOKIE_NAME, session_id, httponly=True, secure=SESSION_COOKIE_SECURE,
                        samesite="strict", max_age=int(SESSION_MAX_AGE_HOURS * 3600), path="/")
    return response

@router.get("/api/admin/session")
async def admin_session(session: dict = Depends(require_permission())):
    return {"success": True, "session": session}

@router.post("/api/admin/logout")
async def admin_logout(request: Request):
    token = get_session_token(request)
    if token:
        _services(request).sessions.revoke_session(token)
    response = JSONResponse({"success": True})
    response.delete_cookie(SESSION_COOKIE_NAME, path="/")
    return response


# ============================================================
# ADMIN: ORDERS
# ============================================================
@router.get("/api/admin/orders")
async def admin_list_orders(request: Request, status: str = None, search: str = None,
                            sortBy: str = "createdAt", sortOrder: str = "desc",
                            limit: int = 50, offset: int = 0,
                            session: dict = Depends(require_permission(VIEW_ORDERS))):
    svc = _services(request)
    all_orders = svc.orders.list_all()
    filtered = filter_orders(all_orders, status, search, sortBy, sortOrder)
    limit, offset = max(0, min(limit, 100)), max(0, offset)
    _audit(request, session, "VIEW_ORDERS", f"Viewed orders ({len(filtered)} results)")
    return {"success": True, "orders": filtered[offset:offset + limit],
            "stats": order_stats(all_orders, svc.clock()),
            "pagination": {"total": len(filtered), "limit": limit, "offset": offset,
                           "hasMore": len(filtered) > offset + limit}}

@router.put("/api/admin/orders")
async def admin_update_order(body: OrderUpdate, request: Request,
                             session: dict = Depends(require_permission(UPDATE_ORDERS))):
    try:
        result = _services(request).orders.update_order(
            body.orderId, status=body.status, progress=body.progress, delivery_url=body.deliveryUrl,
            admin_note=body.adminNotes, admin_email=session["email"])
    except ValueError as e:
        raise HTTPException(400, str(e))
    if result is None:
        raise HTTPException(404, "Order not found")
    order, changes = result
    if changes:
        _audit(request, session, "UPDATE_ORDER", f"Updated order {body.orderId}: {', '.join(changes)}")
    return {"success": True, "message": "Order updated successfully", "order": order, "changes": changes}

@router.delete("/api/admin/orders")
async def admin_cancel_order(request: Request, orderId: str = None,
                             session: dict = Depends(require_permission(UPDATE_ORDERS))):
    if not orderId:
        raise HTTPException(400, "Order ID is required")
    order = _services(request).orders.cancel_order(orderId)
    if order is None:
        raise HTTPException(404, "Order not found")
    _audit(request, session, "CANCEL_ORDER", f"Cancelled order {orderId}")
    return {"success": True, "message": "Order cancelled successfully", "order": order}

@router.post("/api/admin/orders/{order_id}/build-progress")
async def admin_build_progress(order_id: str, body: BuildProgress, request: Request,
                               session: dict = Depends(require_permission(UPDATE_ORDERS))):
    engine = _services(request).orders
    try:
        if body.error:
            order = engine.fail_build(order_id, body.error)
        else:
            order = engine.record_build_progress(order_id, body.progress, body.step, body.log)
    except ValueError as e:
        raise HTTPException(400, str(e))
    if order is None:
        raise HTTPException(404, "Order not found")
    detail = f"Build failed: {body.error}" if body.error else f"Build progress {order['progress']}%"
    _audit(request, session, "BUILD_PROGRESS", f"Order {order_id}: {detail}")
    return {"success": True, "order": order}


# ============================================================
# ADMIN: REPORTS
# ============================================================
@router.get("/api/admin/analytics")
async def admin_analytics(request: Request, session: dict = Depends(require_permission(VIEW_ANALYTICS))):
    svc = _services(request)
    data = analytics(svc.orders.list_all(), svc.clock())
    recent = svc.sessions.get_audit_logs(20, 0)
    _audit(request, session, "VIEW_ANALYTICS", "Viewed analytics dashboard")
    return {"success": True, "analytics": data, "auditLogs": recent,
            "generatedAt": svc.clock().isoformat()}

@router.get("/api/admin/customers")
async def admin_customers(request: Request, search: str = None,
                          session: dict = Depends(require_permission(VIEW_CUSTOMERS))):
    customers = customer_report(_services(request).orders.list_all())
    if search:
        q = search.lower()
        customers = [c for c in customers
                     if q in c["email"].lower() or q in (c["name"] or "").lower()
                     or q in (c["company"] or "").lower()]
    _audit(request, session, "VIEW_CUSTOMERS", f"Viewed customers ({len(customers)} results)")
    return {"success": True, "customers": customers, "total": len(customers)}

@router.get("/api/admin/financial")
async def admin_financial(request: Request, session: dict = Depends(require_permission(VIEW_ANALYTICS))):
    svc = _services(request)
    summary = financial_summary(svc.orders.list_all(), svc.clock())
    _audit(request, session, "VIEW_FINANCIAL", "Viewed financial summary")
    return {"success": True, "financial": summary}

@router.get("/api/admin/financial/refunds")
async def admin_list_refunds(request: Request, status: str = None, startDate: str = None,
                             endDate: str = None, limit: int = 50, offset: int = 0,
                             session: dict = Depends(require_permission(MANAGE_REFUNDS))):
    try:
        start = datetime.fromisoformat(startDate) if startDate else None
        end = datetime.fromisoformat(endDate) if endDate else None
    except ValueError:
        raise HTTPException(400, "Invalid date filter")
    refunds = _services(request).orders.list_refunds(status, start, end)
    limit, offset = max(0, min(limit, 100)), max(0, offset)
    return {"success": True, "refunds": refunds[offset:offset + limit],
            "pagination": {"total": len(refunds), "limit": limit, "offset": offset,
                           "hasMore": len(refunds) > offset + limit}}

@router.post("/api/admin/financial/refunds")
async def admin_refund(body: RefundCreate, request: Request,
                       session: dict = Depends(require_permission(MANAGE_REFUNDS))):
    try:
        result = _services(request).orders.request_refund(body.orderId, body.amount, body.reason,
                                                          session["email"], body.adminNotes)
    except ValueError as e:
        raise HTTPException(400, str(e))
    if result is None:
        raise HTTPException(404, "Order not found")
    refund, order = result
    _audit(request, session, "REFUND_REQUESTED",
           f"Requested refund {refund['id']} of {body.amount} on order {body.orderId}")
    return {"success": True, "refund": refund, "order": order,
            "message": "Refund request created"}

@router.post("/api/admin/financial/refunds/{refund_id}/process")
async def admin_process_refund(refund_id: str, body: RefundProcess, request: Request,
                               session: dict = Depends(require_permission(MANAGE_REFUNDS))):
    try:
        result = _services(request).orders.process_refund(refund_id, body.action, session["email"],
                                                          body.adminNotes)
    except ValueError as e:
        raise HTTPException(400, str(e))
    if result is None:
        raise HTTPException(404, "Refund not found")
    refund, order = result
    action = "REFUND_APPROVED" if refund["status"] == "approved" else "REFUND_DENIED"
    _audit(request, session, action, f"Refund {refund_id} {refund['status']} on order {order['id']}")
    return {"success": True, "refund": refund, "order": order,
            "message": f"Refund {refund['status']}"}


# ============================================================
# ADMIN: SYSTEM (sessions, audit)
# ============================================================
@router.get("/api/admin/system")
async def admin_system(request: Request, session: dict = Depends(require_permission(SYSTEM_ADMIN))):
    svc = _services(request)
    _audit(request, session, "VIEW_SYSTEM_INFO", "Viewed system information")
    return {"success": True,
            "currentSession": {k: session[k] for k in ("id", "email", "loginTime", "lastActivity", "permissions")},
            "activeSessions": len(svc.sessions.sessions),
            "auditEntries": len(svc.sessions.audit),
            "serverTime": svc.clock().isoformat(),
            "environment": os.environ.get("ENVIRONMENT", "development"),
            "version": VERSION}

@router.get("/api/admin/system/sessions")
async def admin_sessions(request: Request, session: dict = Depends(require_permission(SYSTEM_ADMIN))):
    sessions = [dict(s, isCurrentSession=s["id"] == session["id"])
                for s in _services(request).sessions.list_active_sessions()]
    return {"success": True, "sessions": sessions, "total": len(sessions)}

@router.get("/api/admin/system/audit")
async def admin_audit(request: Request, limit: int = 100, offset: int = 0,
                      session: dict = Depends(require_permission(SYSTEM_ADMIN))):
    limit, offset = max(0, min(limit, 500)), max(0, offset)
    logs = _services(request).sessions.get_audit_logs(limit, offset)
    return {"success": True, "logs": logs,
            "pagination": {"limit": limit, "offset": offset, "hasMore": len(logs) == limit}}

@router.delete("/api/admin/system/sessions/{target_id}")
async def admin_revoke_session(target_id: str, request: Request,
                               session: dict = Depends(require_permission(SYSTEM_ADMIN))):
    if target_id == session["id"]:
        raise HTTPException(400, "Cannot revoke your own session")
    if not _services(request).sessions.revoke_session(target_id):
        raise HTTPException(404, "Session not found")
    _audit(request, session, "REVOKE_SESSION", f"Revoked admin session {target_id}")
    return {"success": True, "message": "Session revoked successfully"}

@router.post("/api/admin/system/sessions/{target_id}/extend")
async def admin_extend_session(target_id: str, request: Request,
                               session: dict = Depends(require_permission(SYSTEM_ADMIN))):
    if _services(request).sessions.extend_session(target_id) is None:
        raise HTTPException(404, "Session not found")
    _audit(request, session, "EXTEND_SESSION", f"Extended admin session {target_id}")
    return {"success": True, "message": "Session extended successfully"}

@router.post("/api/admin/system/sessions/revoke-all")
async def admin_revoke_all(request: Request, session: dict = Depends(require_permission(SYSTEM_ADMIN))):
    revoked = _services(request).sessions.revoke_all_sessions(except_session_id=session["id"])
    _audit(request, session, "REVOKE_ALL_SESSIONS", f"Emergency revocation of {revoked} session(s)")
    return {"success": True, "message": f"Revoked {revoked} sessions", "revokedCount": revoked}

@router.post("/api/admin/system/accounts/unlock")
async def admin_unlock_account(body: AccountUnlock, request: Request,
                               session: dict = Depends(require_permission(SYSTEM_ADMIN))):
    if not unlock_admin_account(_services(request).admin_accounts, body.email):
        raise HTTPException(404, "Account not found")
    _audit(request, session, "UNLOCK_ACCOUNT", f"Unlocked admin account {body.email}")
    return {"success": True, "message": "Account unlocked successfully"}


# ============================================================
# ADMIN: ROLES & PERMISSIONS
# ============================================================
@router.get("/api/admin/security/permissions")
async def admin_permissions(session: dict = Depends(require_permission(MANAGE_ROLES))):
    return {"success": True, "permissions": list_permissions()}

@router.get("/api/admin/security/roles")
async def admin_roles(request: Request, session: dict = Depends(require_permission(MANAGE_ROLES))):
    return {"success": True, "roles": _services(request).roles.list_roles()}

@router.post("/api/admin/security/roles")
async def admin_create_role(body: RoleCreate, request: Request,
                            session: dict = Depends(require_permission(MANAGE_ROLES))):
    try:
        role = _services(request).roles.create_role(body.name, body.description, body.permissions, body.level)
    except ValueError as e:
        raise HTTPException(400, str(e))
    _audit(request, session, "CREATE_ROLE", f"Created role {role['name']}")
    return {"success": True, "role": role, "message": "Role created successfully"}

@router.put("/api/admin/security/roles")
async def admin_update_role(body: RoleUpdate, request: Request,
                            session: dict = Depends(require_permission(MANAGE_ROLES))):
    try:
        role = _services(request).roles.update_role(body.id, body.name, body.description,
                                                    body.permissions, body.level)
    except ValueError as e:
        raise HTTPException(400, str(e))
    if role is None:
        raise HTTPException(404, "Role not found")
    _audit(request, session, "UPDATE_ROLE", f"Updated role {role['name']}")
    return {"success": True, "role": role, "message": "Role updated successfully"}

@router.delete("/api/admin/security/roles")
async def admin_delete_role(request: Request, roleId: str = None,
                            session: dict = Depends(require_permission(MANAGE_ROLES))):
    if not roleId:
        raise HTTPException(400, "Role ID is required")
    try:
        deleted = _services(request).roles.delete_role(roleId)
    except ValueError as e:
        raise HTTPException(400, str(e))
    if not deleted:
        raise HTTPException(404, "Role not found")
    _audit(request, session, "DELETE_ROLE", f"Deleted role {roleId}")
    return {"success": True, "message": "Role deleted successfully"}


# ============================================================
# APP
# ============================================================
def create_app(services: Services = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.services.sweeper.start()
        print(f"[Server] ForgeDesk v{VERSION} started; session sweep every "
              f"{app.state.services.sweeper.interval}s")
        yield
        await app.state.services.sweeper.stop()

    app = FastAPI(title="ForgeDesk", version=VERSION, lifespan=lifespan)
    app.state.services = services or Services()
    app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_credentials=True,
                       allow_methods=["*"], allow_headers=["*"])

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        return JSONResponse({"success": False, "error": exc.detail}, status_code=exc.status_code,
                            headers=getattr(exc, "headers", None))

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        details = [{"field": ".".join(str(p) for p in e.get("loc", [])[1:]), "message": e.get("msg")}
                   for e in exc.errors()]
        return JSONResponse({"success": False, "error": "Validation failed", "details": details},
                            status_code=400)

    @app.exception_handler(Exception)
    async def internal_error(request: Request, exc: Exception):
        print(f"[Server] Unhandled error on {request.url.path}: {type(exc).__name__}: {exc}")
        return JSONResponse({"success": False, "error": "Internal server error"}, status_code=500)

    app.include_router(router)
    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    port = int(os.environ.get("PORT", 8000))
    print(f"Starting ForgeDesk v{VERSION} on port {port}")
    uvicorn.run(app, host="0.0.0.0", port=port)
