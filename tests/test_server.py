import json

from fastapi.testclient import TestClient

from conftest import ADMIN_EMAIL, ADMIN_PASSWORD, WEBHOOK_SECRET, order_input, login
from forgedesk.server import create_app, payment_signature


def _create(client, **overrides):
    resp = client.post("/api/orders", json=order_input(**overrides))
    assert resp.status_code == 200, resp.text
    return resp.json()


def _webhook(client, event, secret=WEBHOOK_SECRET):
    body = json.dumps(event).encode()
    return client.post("/api/orders/webhook", content=body,
                       headers={"X-Payment-Signature": payment_signature(secret, body),
                                "Content-Type": "application/json"})


# ── public ──

def test_health(client):
    resp = client.get("/api/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


def test_lifespan_runs_sweeper(services):
    with TestClient(create_app(services)) as client:
        assert client.get("/api/health").json()["sweeper"] == "running"
    assert not services.sweeper.running


def test_pricing_and_quote(client):
    assert "simple" in client.get("/api/pricing").json()["tiers"]
    resp = client.post("/api/pricing/quote", json={"complexity": "simple", "timeline": "24h", "features": []})
    assert resp.json()["quote"]["price"] == 748
    bad = client.post("/api/pricing/quote", json={"complexity": "medium", "timeline": "24h"})
    assert bad.status_code == 400
    assert bad.json()["success"] is False


def test_create_and_fetch_order(client):
    created = _create(client)
    assert created["price"] == 299
    by_id = client.get("/api/orders", params={"orderId": created["orderId"]}).json()["order"]
    by_ref = client.get("/api/orders", params={"sessionId": created["checkoutSessionId"]}).json()["order"]
    assert by_id["id"] == by_ref["id"] == created["orderId"]
    assert client.get("/api/orders", params={"orderId": "order_nope"}).status_code == 404
    assert client.get("/api/orders").status_code == 400


def test_create_order_validation_errors(client):
    resp = client.post("/api/orders", json=order_input(customerEmail="nope"))
    assert resp.status_code == 400
    assert resp.json()["details"][0]["field"] == "customerEmail"
    mismatch = client.post("/api/orders", json=order_input(price=1))
    assert mismatch.status_code == 400
    assert "Price mismatch" in mismatch.json()["error"]
    missing = client.post("/api/orders", json={"customerName": "Ada"})
    assert missing.status_code == 400
    assert missing.json()["error"] == "Validation failed"


def test_order_status(client):
    created = _create(client)
    status = client.get("/api/orders/status", params={"orderId": created["orderId"]}).json()["order"]
    assert status["status"] == "pending"
    assert "customerEmail" not in status


# ── webhook ──

def test_webhook_marks_order_paid(client):
    created = _create(client)
    resp = _webhook(client, {"type": "checkout.session.completed",
                             "data": {"object": {"id": created["checkoutSessionId"], "payment_intent": "pi_1"}}})
    assert resp.status_code == 200
    assert resp.json()["orderId"] == created["orderId"]
    order = client.get("/api/orders", params={"orderId": created["orderId"]}).json()["order"]
    assert order["status"] == "paid"


def test_webhook_rejects_bad_signature(client):
    created = _create(client)
    event = {"type": "checkout.session.completed", "data": {"object": {"id": created["checkoutSessionId"]}}}
    assert _webhook(client, event, secret="whsec_wrong").status_code == 400
    unsigned = client.post("/api/orders/webhook", json=event)
    assert unsigned.status_code == 400
    assert unsigned.json()["error"] == "Missing payment signature"
    order = client.get("/api/orders", params={"orderId": created["orderId"]}).json()["order"]
    assert order["status"] == "pending"


def test_webhook_ignores_unknown_event(client):
    resp = _webhook(client, {"type": "customer.created", "data": {"object": {}}})
    assert resp.status_code == 200
    assert resp.json()["orderId"] is None


# ── login / session ──

def test_login_sets_cookie_and_session_works(client):
    resp = client.post("/api/admin/login", json={"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD})
    assert resp.status_code == 200
    assert resp.json()["admin"]["role"] == "Super Admin"
    assert "admin_session" in resp.cookies
    set_cookie = resp.headers["set-cookie"].lower()
    assert "httponly" in set_cookie and "samesite=strict" in set_cookie
    assert client.get("/api/admin/session").json()["session"]["email"] == ADMIN_EMAIL


def test_login_wrong_password(client, services):
    resp = client.post("/api/admin/login", json={"email": ADMIN_EMAIL, "password": "guess"})
    assert resp.status_code == 401
    assert resp.json() == {"success": False, "error": "Invalid credentials"}
    assert services.sessions.get_audit_logs(1)[0]["action"] == "LOGIN_FAILED"


def test_login_rate_limited_after_five_attempts(client, services):
    for _ in range(5):
        client.post("/api/admin/login", json={"email": ADMIN_EMAIL, "password": "guess"})
    resp = client.post("/api/admin/login", json={"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD})
    assert resp.status_code == 429
    assert int(resp.headers["Retry-After"]) >= 1
    assert services.sessions.get_audit_logs(1)[0]["action"] == "LOGIN_RATE_LIMITED"


def test_account_locks_after_repeated_wrong_passwords(client, services):
    support = {"email": "support@example.com", "password": "guess"}
    for i in range(5):
        # a new client IP each time keeps the per-IP rate limit out of the way
        resp = client.post("/api/admin/login", json=support, headers={"X-Forwarded-For": f"203.0.113.{i}"})
        assert resp.status_code == 401
    assert [e["action"] for e in services.sessions.get_audit_logs(2)] == ["ACCOUNT_LOCKED", "LOGIN_FAILED"]

    locked = client.post("/api/admin/login", json=dict(support, password=ADMIN_PASSWORD),
                         headers={"X-Forwarded-For": "203.0.113.50"})
    assert locked.status_code == 423
    assert locked.json() == {"success": False,
                             "error": "Account is locked. Please contact system administrator."}
    assert services.sessions.get_audit_logs(1)[0]["action"] == "LOGIN_BLOCKED"

    headers = login(client)
    unlock = "/api/admin/system/accounts/unlock"
    assert client.post(unlock, headers=headers, json={"email": "ghost@example.com"}).status_code == 404
    assert client.post(unlock, headers=headers, json={"email": "support@example.com"}).status_code == 200
    assert services.sessions.get_audit_logs(1)[0]["action"] == "UNLOCK_ACCOUNT"
    support_headers = login(client, email="support@example.com")
    assert client.post(unlock, headers=support_headers, json={"email": ADMIN_EMAIL}).status_code == 403


def test_login_refused_when_role_was_deleted(client, services):
    headers = login(client)
    roles = client.get("/api/admin/security/roles", headers=headers).json()["roles"]
    support_role = next(r for r in roles if r["name"] == "Support")
    assert client.delete("/api/admin/security/roles", headers=headers,
                         params={"roleId": support_role["id"]}).status_code == 200

    resp = client.post("/api/admin/login", json={"email": "support@example.com", "password": ADMIN_PASSWORD})
    assert resp.status_code == 403
    assert resp.json()["error"] == "Role grants no permissions"
    assert services.sessions.get_audit_logs(1)[0]["action"] == "LOGIN_FAILED"
    assert all(s["email"] != "support@example.com" for s in services.sessions.list_active_sessions())


def test_login_refused_when_role_was_renamed(client):
    headers = login(client)
    roles = client.get("/api/admin/security/roles", headers=headers).json()["roles"]
    support_role = next(r for r in roles if r["name"] == "Support")
    client.put("/api/admin/security/roles", headers=headers, json={"id": support_role["id"], "name": "Helpdesk"})
    resp = client.post("/api/admin/login", json={"email": "support@example.com", "password": ADMIN_PASSWORD})
    assert resp.status_code == 403


def test_logout_revokes_session(client):
    headers = login(client)
    assert client.post("/api/admin/logout", headers=headers).status_code == 200
    assert client.get("/api/admin/session", headers=headers).status_code == 401


def test_admin_routes_require_session(client):
    resp = client.get("/api/admin/orders")
    assert resp.status_code == 401
    assert resp.json()["error"] == "Not authenticated"
    bad = client.get("/api/admin/orders", headers={"Authorization": "Bearer admin_forged"})
    assert bad.status_code == 401
    assert bad.json()["error"] == "Session invalid"


def test_session_from_other_ip_is_revoked(client, services):
    headers = login(client)
    moved = client.get("/api/admin/session", headers={**headers, "X-Forwarded-For": "198.51.100.7"})
    assert moved.status_code == 401
    assert client.get("/api/admin/session", headers=headers).status_code == 401
    assert services.sessions.get_audit_logs(1)[0]["action"] == "SECURITY_VIOLATION"


def test_session_expires_after_inactivity(client, clock):
    headers = login(client)
    clock.advance(hours=2)
    assert client.get("/api/admin/session", headers=headers).status_code == 401


def test_insufficient_permissions(client):
    headers = login(client, email="support@example.com")
    assert client.get("/api/admin/orders", headers=headers).status_code == 200
    resp = client.get("/api/admin/analytics", headers=headers)
    assert resp.status_code == 403
    assert resp.json()["error"] == "Insufficient permissions"


# ── admin orders ──

def test_admin_order_list_and_update(client, services):
    headers = login(client)
    created = _create(client)
    _create(client, customerEmail="bob@example.com")
    listing = client.get("/api/admin/orders", headers=headers, params={"limit": 1}).json()
    assert listing["pagination"] == {"total": 2, "limit": 1, "offset": 0, "hasMore": True}
    assert listing["stats"]["pending"] == 2

    resp = client.put("/api/admin/orders", headers=headers,
                      json={"orderId": created["orderId"], "status": "paid", "adminNotes": "Verified by phone"})
    assert resp.status_code == 200
    assert resp.json()["order"]["status"] == "paid"
    assert services.sessions.get_audit_logs(1)[0]["action"] == "UPDATE_ORDER"

    assert client.put("/api/admin/orders", headers=headers,
                      json={"orderId": created["orderId"], "status": "shipped"}).status_code == 400
    assert client.put("/api/admin/orders", headers=headers,
                      json={"orderId": "order_nope", "status": "paid"}).status_code == 404
    assert client.put("/api/admin/orders", headers=headers,
                      json={"orderId": created["orderId"], "progress": 150}).status_code == 400


def test_admin_cancel_order(client):
    headers = login(client)
    created = _create(client)
    resp = client.delete("/api/admin/orders", headers=headers, params={"orderId": created["orderId"]})
    assert resp.json()["order"]["status"] == "cancelled"
    assert client.get("/api/orders", params={"orderId": created["orderId"]}).status_code == 200


def test_build_progress_route(client):
    headers = login(client)
    created = _create(client, deliveryMethod="github")
    client.put("/api/admin/orders", headers=headers, json={"orderId": created["orderId"], "status": "paid"})
    url = f"/api/admin/orders/{created['orderId']}/build-progress"
    mid = client.post(url, headers=headers, json={"progress": 40, "step": "Generating components..."})
    assert mid.json()["order"]["status"] == "building"
    done = client.post(url, headers=headers, json={"progress": 100}).json()["order"]
    assert done["status"] == "completed"
    assert done["deliveryUrl"] == "https://github.com/forgedesk-builds/inventory-tracker"


def test_build_failure_route(client):
    headers = login(client)
    created = _create(client)
    client.put("/api/admin/orders", headers=headers, json={"orderId": created["orderId"], "status": "paid"})
    resp = client.post(f"/api/admin/orders/{created['orderId']}/build-progress", headers=headers,
                       json={"error": "tests failed"})
    assert resp.json()["order"]["status"] == "build_failed"


# ── reports & refunds ──

def test_analytics_customers_financial(client):
    headers = login(client)
    _create(client)
    analytics = client.get("/api/admin/analytics", headers=headers).json()
    assert analytics["analytics"]["orders"]["total"] == 1
    assert analytics["auditLogs"][0]["action"] == "LOGIN"
    customers = client.get("/api/admin/customers", headers=headers, params={"search": "ada"}).json()
    assert customers["total"] == 1
    financial = client.get("/api/admin/financial", headers=headers).json()
    assert financial["financial"]["orders"]["total"] == 1


def test_refund_route(client, services):
    headers = login(client)
    created = _create(client)
    client.put("/api/admin/orders", headers=headers, json={"orderId": created["orderId"], "status": "paid"})
    resp = client.post("/api/admin/financial/refunds", headers=headers,
                       json={"orderId": created["orderId"], "amount": 99.5, "reason": "Partial scope delivered"})
    assert resp.status_code == 200
    refund = resp.json()["refund"]
    assert refund["status"] == "pending"
    assert resp.json()["order"]["status"] == "paid"
    assert services.sessions.get_audit_logs(1)[0]["action"] == "REFUND_REQUESTED"

    too_much = client.post("/api/admin/financial/refunds", headers=headers,
                           json={"orderId": created["orderId"], "amount": 250, "reason": "Second attempt at refund"})
    assert too_much.status_code == 400
    short = client.post("/api/admin/financial/refunds", headers=headers,
                        json={"orderId": created["orderId"], "amount": 10, "reason": "short"})
    assert short.status_code == 400
    missing = client.post("/api/admin/financial/refunds", headers=headers,
                          json={"orderId": "order_missing", "amount": 10, "reason": "Customer changed mind"})
    assert missing.status_code == 404


def test_refund_approval_flow(client, services):
    headers = login(client)
    created = _create(client)
    order_id = created["orderId"]
    client.put("/api/admin/orders", headers=headers, json={"orderId": order_id, "status": "paid"})
    refunds = "/api/admin/financial/refunds"

    partial = client.post(refunds, headers=headers,
                          json={"orderId": order_id, "amount": 99, "reason": "Partial scope delivered"}).json()["refund"]
    denied = client.post(refunds, headers=headers,
                         json={"orderId": order_id, "amount": 50, "reason": "Goodwill credit asked for"}).json()["refund"]
    listing = client.get(refunds, headers=headers, params={"status": "pending"}).json()
    assert {r["id"] for r in listing["refunds"]} == {partial["id"], denied["id"]}
    assert listing["pagination"]["total"] == 2

    resp = client.post(f"{refunds}/{denied['id']}/process", headers=headers, json={"action": "deny"})
    assert resp.json()["refund"]["status"] == "denied"
    assert services.sessions.get_audit_logs(1)[0]["action"] == "REFUND_DENIED"

    resp = client.post(f"{refunds}/{partial['id']}/process", headers=headers,
                       json={"action": "approve", "adminNotes": "Confirmed with customer"})
    assert resp.status_code == 200
    assert resp.json()["refund"]["status"] == "approved"
    assert resp.json()["order"]["status"] == "paid"
    assert services.sessions.get_audit_logs(1)[0]["action"] == "REFUND_APPROVED"

    rest = client.post(refunds, headers=headers,
                       json={"orderId": order_id, "amount": 200, "reason": "Remaining balance returned"}).json()["refund"]
    final = client.post(f"{refunds}/{rest['id']}/process", headers=headers, json={"action": "approve"}).json()
    assert final["order"]["status"] == "refunded"
    assert final["order"]["refundedAmount"] == 299

    again = client.post(f"{refunds}/{rest['id']}/process", headers=headers, json={"action": "deny"})
    assert again.status_code == 400
    assert client.post(f"{refunds}/refund_missing/process", headers=headers,
                       json={"action": "approve"}).status_code == 404
    assert client.post(f"{refunds}/{rest['id']}/process", headers=headers,
                       json={"action": "cancel"}).status_code == 400
    assert client.get(refunds, headers=headers, params={"startDate": "yesterday"}).status_code == 400
    approved = client.get(refunds, headers=headers, params={"status": "approved"}).json()["refunds"]
    assert len(approved) == 2


def test_refund_routes_require_manage_refunds(client):
    support = login(client, email="support@example.com")
    assert client.get("/api/admin/financial/refunds", headers=support).status_code == 403
    assert client.post("/api/admin/financial/refunds/refund_x/process", headers=support,
                       json={"action": "approve"}).status_code == 403


# ── system ──

def test_system_sessions_and_audit(client):
    headers = login(client)
    other = login(client, email="support@example.com")
    sessions = client.get("/api/admin/system/sessions", headers=headers).json()["sessions"]
    assert len(sessions) == 2
    current = [s for s in sessions if s["isCurrentSession"]]
    assert len(current) == 1 and current[0]["email"] == ADMIN_EMAIL

    other_id = other["Authorization"][7:]
    own_id = headers["Authorization"][7:]
    assert client.delete(f"/api/admin/system/sessions/{own_id}", headers=headers).status_code == 400
    assert client.post(f"/api/admin/system/sessions/{other_id}/extend", headers=headers).status_code == 200
    assert client.delete(f"/api/admin/system/sessions/{other_id}", headers=headers).status_code == 200
    assert client.delete(f"/api/admin/system/sessions/{other_id}", headers=headers).status_code == 404
    assert client.get("/api/admin/session", headers=other).status_code == 401

    audit = client.get("/api/admin/system/audit", headers=headers, params={"limit": 2}).json()
    assert len(audit["logs"]) == 2
    assert audit["pagination"]["hasMore"] is True
    assert client.get("/api/admin/system", headers=headers).json()["activeSessions"] == 1


def test_revoke_all_sessions(client):
    headers = login(client)
    others = [login(client, email="support@example.com") for _ in range(2)]
    resp = client.post("/api/admin/system/sessions/revoke-all", headers=headers)
    assert resp.json()["revokedCount"] == 2
    assert client.get("/api/admin/session", headers=headers).status_code == 200
    assert all(client.get("/api/admin/session", headers=h).status_code == 401 for h in others)


# ── roles ──

def test_role_management_requires_manage_roles(client, services):
    headers = login(client)
    # Super Admin holds system_admin, which implies manage_roles
    assert client.get("/api/admin/security/roles", headers=headers).status_code == 200
    support = login(client, email="support@example.com")
    assert client.get("/api/admin/security/roles", headers=support).status_code == 403


def test_role_crud(client):
    headers = login(client)
    created = client.post("/api/admin/security/roles", headers=headers,
                          json={"name": "Auditor", "permissions": ["view_orders"], "level": 2})
    assert created.status_code == 200
    role_id = created.json()["role"]["id"]
    assert client.post("/api/admin/security/roles", headers=headers,
                       json={"name": "Auditor"}).status_code == 400
    duplicate = client.put("/api/admin/security/roles", headers=headers, json={"id": role_id, "name": "Finance"})
    assert duplicate.status_code == 400
    assert duplicate.json()["error"] == "Role 'Finance' already exists"
    updated = client.put("/api/admin/security/roles", headers=headers,
                         json={"id": role_id, "permissions": ["view_orders", "view_analytics"]})
    assert updated.json()["role"]["permissions"] == ["view_orders", "view_analytics"]
    assert client.delete("/api/admin/security/roles", headers=headers,
                         params={"roleId": role_id}).status_code == 200
    assert client.delete("/api/admin/security/roles", headers=headers,
                         params={"roleId": role_id}).status_code == 404
    roles = client.get("/api/admin/security/roles", headers=headers).json()["roles"]
    super_admin = next(r for r in roles if r["name"] == "Super Admin")
    assert client.delete("/api/admin/security/roles", headers=headers,
                         params={"roleId": super_admin["id"]}).status_code == 400
    assert len(client.get("/api/admin/security/permissions", headers=headers).json()["permissions"]) == 7
