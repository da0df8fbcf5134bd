"""
ForgeDesk — Order Lifecycle

Order Lifecycle:
  PENDING → PAID → BUILDING → COMPLETED
     ↓        ↓        ↓          ↓
  PAYMENT_FAILED   BUILD_FAILED   REFUNDED / CANCELLED

Side exits (cancelled, refunded, payment_failed, build_failed) are terminal
for billing. The transition table below is currently permissive: every
status may follow every other, matching how admins correct orders by hand.
Tightening the policy means editing ALLOWED_TRANSITIONS only.

Price is computed once at creation from the pricing table and never changes.
Orders are never deleted; cancelling marks them cancelled.
"""
import copy
import re
import secrets
import time
from datetime import datetime, timedelta
from enum import Enum

from forgedesk.config import (
    COMPLEXITIES, TIMELINES, DELIVERY_METHODS, TIMELINE_HOURS, DEFAULT_TIMELINE_HOURS, APP_URL, BUILD_STEPS,
)
from forgedesk.db import OrderStore
from forgedesk.pricing import compute_price, validate_selection


# ============================================================
# STATUS
# ============================================================
class OrderStatus(str, Enum):
    PENDING = "pending"
    PENDING_PAYMENT = "pending_payment"
    PROCESSING = "processing"
    PAID = "paid"
    BUILDING = "building"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    PAYMENT_FAILED = "payment_failed"
    BUILD_FAILED = "build_failed"


REVENUE_STATUSES = {OrderStatus.PAID, OrderStatus.BUILDING, OrderStatus.COMPLETED}
REFUNDABLE_STATUSES = {OrderStatus.PAID, OrderStatus.BUILDING,
                       OrderStatus.COMPLETED, OrderStatus.BUILD_FAILED}

# TODO: decide with billing whether completed → pending and refunded → paid should be blocked
ALLOWED_TRANSITIONS = {status: set(OrderStatus) for status in OrderStatus}

# Timestamp stamped when an order enters a status
STATUS_TIMESTAMPS = {
    OrderStatus.PAID: ["paidAt"],
    OrderStatus.COMPLETED: ["completedAt"],
    OrderStatus.CANCELLED: ["cancelledAt"],
    OrderStatus.REFUNDED: ["refundedAt", "cancelledAt"],
    OrderStatus.PAYMENT_FAILED: ["paymentFailedAt"],
    OrderStatus.BUILD_FAILED: ["buildFailedAt"],
}

IMMUTABLE_FIELDS = {"id", "price", "totalAmount", "createdAt"}

REFUND_PENDING, REFUND_APPROVED, REFUND_DENIED = "pending", "approved", "denied"
REFUND_ACTIONS = {"approve": REFUND_APPROVED, "deny": REFUND_DENIED}

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
OPTIONAL_TEXT_FIELDS = ["company", "phone", "database", "specialRequirements"]
REQUIRED_FIELDS = ["customerName", "customerEmail", "appName", "appDescription",
                   "framework", "complexity", "timeline", "deliveryMethod"]


class OrderValidationError(ValueError):
    """Order input rejected; details is a list of {field, message}."""

    def __init__(self, message: str, details: list = None):
        super().__init__(message)
        self.details = details or []


def parse_status(value) -> OrderStatus:
    try:
        return OrderStatus(value)
    except ValueError:
        raise ValueError(f"Invalid status '{value}'. Must be one of: {[s.value for s in OrderStatus]}")


def _slug(name: str) -> str:
    return re.sub(r"\s+", "-", (name or "app").strip().lower())


# ============================================================
# INPUT VALIDATION
# ============================================================
def validate_order_input(data: dict) -> list:
    """Return a list of {field, message} problems; empty when valid."""
    problems = []
    for field in REQUIRED_FIELDS:
        value = data.get(field)
        if value is None or (isinstance(value, str) and not value.strip()):
            problems.append({"field": field, "message": f"{field} is required"})
        elif not isinstance(value, str):
            problems.append({"field": field, "message": f"{field} must be a string"})
    for field in OPTIONAL_TEXT_FIELDS:
        if data.get(field) is not None and not isinstance(data[field], str):
            problems.append({"field": field, "message": f"{field} must be a string"})
    price = data.get("price")
    if price is not None and (isinstance(price, bool) or not isinstance(price, (int, float))):
        problems.append({"field": "price", "message": "price must be a number"})
    for field in ("features", "authentication"):
        values = data.get(field) or []
        if not isinstance(values, list) or not all(isinstance(v, str) for v in values):
            problems.append({"field": field, "message": f"{field} must be a list of strings"})
    if problems:
        return problems

    if not EMAIL_RE.match(data["customerEmail"]):
        problems.append({"field": "customerEmail", "message": "Valid email is required"})
    if len(data["appDescription"].strip()) < 10:
        problems.append({"field": "appDescription",
                         "message": "App description must be at least 10 characters"})
    if data["complexity"] not in COMPLEXITIES:
        problems.append({"field": "complexity", "message": f"Must be one of: {list(COMPLEXITIES)}"})
    if data["timeline"] not in TIMELINES:
        problems.append({"field": "timeline", "message": f"Must be one of: {list(TIMELINES)}"})
    if data["deliveryMethod"] not in DELIVERY_METHODS:
        problems.append({"field": "deliveryMethod", "message": f"Must be one of: {list(DELIVERY_METHODS)}"})
    return problems


# ============================================================
# ENGINE
# ============================================================
class OrderEngine:
    def __init__(self, store: OrderStore = None, clock=datetime.now):
        self.store = store or OrderStore()
        self.clock = clock

    def _now(self) -> str:
        return self.clock().isoformat()

    # ── creation ──
    def create_order(self, order_input: dict) -> dict:
        problems = validate_order_input(order_input)
        if problems:
            raise OrderValidationError("Validation failed", problems)

        features = list(order_input.get("features") or [])
        complexity, timeline = order_input["complexity"], order_input["timeline"]
        try:
            validate_selection(complexity, timeline, features)
        except ValueError as e:
            raise OrderValidationError(str(e), [{"field": "timeline" if "Timeline" in str(e) else "features",
                                                 "message": str(e)}])

        price = compute_price(complexity, timeline, features)
        quoted = order_input.get("price")
        if quoted is not None and abs(float(quoted) - price) > 0.01:
            raise OrderValidationError("Price mismatch. Please refresh and try again.",
                                       [{"field": "price", "message": f"Expected {price}"}])

        now = self._now()
        order = {
            "id": f"order_{int(time.time() * 1000)}_{secrets.token_hex(6)}",
            "customerName": order_input["customerName"].strip(),
            "customerEmail": order_input["customerEmail"].strip(),
            "company": order_input.get("company"),
            "phone": order_input.get("phone"),
            "appName": order_input["appName"].strip(),
            "appDescription": order_input["appDescription"].strip(),
            "framework": order_input["framework"],
            "complexity": complexity,
            "features": features,
            "database": order_input.get("database"),
            "authentication": list(order_input.get("authentication") or []),
            "timeline": timeline,
            "deliveryMethod": order_input["deliveryMethod"],
            "specialRequirements": order_input.get("specialRequirements"),
            "price": price,
            "totalAmount": price,
            "currency": (order_input.get("currency") or "usd").lower(),
            "status": OrderStatus.PENDING.value,
            "paymentReference": f"cs_{secrets.token_hex(12)}",
            "paymentIntentId": None,
            "createdAt": now,
            "updatedAt": now,
            "progress": 0,
            "buildLogs": [],
            "adminNotes": [],
            "refunds": [],
            "refundedAmount": 0,
        }
        self.store.add(order)
        print(f"[Orders] Created {order['id']} ({complexity}/{timeline}) for {order['customerEmail']}: {price}")
        return copy.deepcopy(order)

    # ── transitions ──
    def transition(self, order_id: str, new_status, fields: dict = None):
        """
        Apply a status change plus field updates.
        None if the order does not exist, checked before the status and fields.
        """
        with self.store.lock:
            order = self.store.get(order_id)
            if order is None:
                return None
            status = parse_status(new_status)
            fields = dict(fields or {})
            locked = IMMUTABLE_FIELDS & set(fields)
            if locked:
                raise ValueError(f"Cannot modify {sorted(locked)} after order creation")
            current = OrderStatus(order["status"])
            if status not in ALLOWED_TRANSITIONS.get(current, set()):
                raise ValueError(f"Cannot transition from '{current.value}' to '{status.value}'")

            now = self._now()
            if status != current:
                for stamp in STATUS_TIMESTAMPS.get(status, []):
                    order[stamp] = now
                if status == OrderStatus.BUILDING and not order.get("buildStartedAt"):
                    order["buildStartedAt"] = now
                    order["progress"] = 0
                elif status == OrderStatus.COMPLETED:
                    order["progress"] = 100
            order.update(fields)
            order["status"] = status.value
            order["updatedAt"] = now
            return copy.deepcopy(order)

    def update_order(self, order_id: str, status=None, progress: int = None,
                     delivery_url: str = None, admin_note: str = None, admin_email: str = "system"):
        """Admin edit. Returns (order, changes) or None if the order does not exist."""
        with self.store.lock:
            order = self.store.get(order_id)
            if order is None:
                return None
            changes = []
            if status is not None and parse_status(status).value != order["status"]:
                changes.append(f"Status: {order['status']} → {parse_status(status).value}")
                self.transition(order_id, status)
            if progress is not None and progress != order.get("progress"):
                changes.append(f"Progress: {order.get('progress') or 0}% → {progress}%")
                order["progress"] = progress
            if delivery_url and delivery_url != order.get("deliveryUrl"):
                changes.append("Delivery URL updated")
                order["deliveryUrl"] = delivery_url
            if admin_note:
                order.setdefault("adminNotes", []).append(
                    {"note": admin_note, "timestamp": self._now(), "admin": admin_email})
                changes.append("Added admin note")
            if changes:
                order["updatedAt"] = self._now()
            return copy.deepcopy(order), changes

    def cancel_order(self, order_id: str):
        return self.transition(order_id, OrderStatus.CANCELLED)

    # ── build progress ──
    def record_build_progress(self, order_id: str, progress: int, step: str = None, log: str = None):
        """Apply a progress report from the builder; 100% completes the order and assigns delivery."""
        progress = max(0, min(100, int(progress)))
        with self.store.lock:
            order = self.store.get(order_id)
            if order is None:
                return None
            if order["status"] == OrderStatus.PAID.value:
                self.transition(order_id, OrderStatus.BUILDING)
            elif order["status"] != OrderStatus.BUILDING.value:
                raise ValueError(f"Order {order_id} is '{order['status']}', not building")
            logs = order.setdefault("buildLogs", [])
            if step:
                order["currentBuildStep"] = step
                logs.append(f"✓ {step}")
            if log:
                logs.append(log)
            order["progress"] = progress
            order["updatedAt"] = self._now()
            if progress < 100:
                return copy.deepcopy(order)

            logs.append("Build completed successfully!")
            return self.transition(order_id, OrderStatus.COMPLETED, self._delivery_fields(order))

    @staticmethod
    def _delivery_fields(order: dict) -> dict:
        slug = _slug(order.get("appName"))
        method = order.get("deliveryMethod")
        if method == "github":
            return {"deliveryUrl": f"https://github.com/forgedesk-builds/{slug}"}
        if method == "zip":
            return {"deliveryUrl": f"{APP_URL}/api/orders/download?orderId={order['id']}"}
        if method == "deployed":
            url = f"https://{slug}-{order['id'][-8:]}.vercel.app"
            return {"deliveryUrl": url, "adminUrl": f"{url}/admin"}
        return {}

    def fail_build(self, order_id: str, error: str):
        print(f"[Orders] Build failed for {order_id}: {error}")
        return self.transition(order_id, OrderStatus.BUILD_FAILED, {"buildError": error})

    # ── payments ──
    def handle_payment_event(self, event: dict):
        """Apply a payment webhook event. Returns the updated order, or None if nothing matched."""
        kind = event.get("type")
        obj = (event.get("data") or {}).get("object") or {}
        if kind == "checkout.session.completed":
            order = self.find_by_payment_reference(obj.get("id", ""))
            if order is None:
                print(f"[Webhook] Order not found for checkout session {obj.get('id')}")
                return None
            fields = {}
            if isinstance(obj.get("payment_intent"), str):
                fields["paymentIntentId"] = obj["payment_intent"]
            print(f"[Webhook] Payment successful for order {order['id']}")
            return self.transition(order["id"], OrderStatus.PAID, fields)
        if kind == "payment_intent.payment_failed":
            order = self.find_by_payment_reference(obj.get("id", ""))
            if order is None:
                return None
            print(f"[Webhook] Payment failed for order {order['id']}")
            return self.transition(order["id"], OrderStatus.PAYMENT_FAILED)
        print(f"[Webhook] Unhandled event type: {kind}")
        return None

    # ── refunds ──
    # A refund request starts pending and is approved or denied by an admin.
    # Approval records the money as refunded; once approvals cover totalAmount
    # the order itself moves to refunded.
    def request_refund(self, order_id: str, amount: float, reason: str, admin_email: str,
                       admin_notes: str = None):
        """Open a pending refund request. Returns (refund, order) or None if the order does not exist."""
        with self.store.lock:
            order = self.store.get(order_id)
            if order is None:
                return None
            if OrderStatus(order["status"]) not in REFUNDABLE_STATUSES:
                raise ValueError(f"Orders in status '{order['status']}' cannot be refunded")
            refunds = order.setdefault("refunds", [])
            committed = sum(r["amount"] for r in refunds if r["status"] in (REFUND_PENDING, REFUND_APPROVED))
            available = order["totalAmount"] - committed
            if amount <= 0 or amount > available:
                raise ValueError(f"Refund amount must be between 0 and {available}")
            reason = (reason or "").strip()
            if not 10 <= len(reason) <= 500:
                raise ValueError("Refund reason must be 10-500 characters")
            refund = {
                "id": f"refund_{secrets.token_hex(6)}",
                "orderId": order["id"],
                "customerEmail": order["customerEmail"],
                "amount": amount,
                "reason": reason,
                "adminNotes": admin_notes,
                "status": REFUND_PENDING,
                "requestedBy": admin_email,
                "requestedAt": self._now(),
                "processedBy": None,
                "processedAt": None,
                "paymentRefundId": None,
            }
            refunds.append(refund)
            order["updatedAt"] = refund["requestedAt"]
            print(f"[Orders] Refund {refund['id']} of {amount} requested on {order_id}")
            return copy.deepcopy(refund), copy.deepcopy(order)

    def process_refund(self, refund_id: str, action: str, admin_email: str, admin_notes: str = None):
        """Approve or deny a pending refund. Returns (refund, order) or None if no such refund."""
        if action not in REFUND_ACTIONS:
            raise ValueError(f"Refund action must be one of: {list(REFUND_ACTIONS)}")
        with self.store.lock:
            order = self.store.find(lambda o: any(r["id"] == refund_id for r in o.get("refunds") or []))
            if order is None:
                return None
            refund = next(r for r in order["refunds"] if r["id"] == refund_id)
            if refund["status"] != REFUND_PENDING:
                raise ValueError(f"Refund {refund_id} is already {refund['status']}")

            now = self._now()
            refund.update(status=REFUND_ACTIONS[action], processedBy=admin_email, processedAt=now)
            if admin_notes:
                refund["adminNotes"] = admin_notes
            order["updatedAt"] = now
            if action == "approve":
                refund["paymentRefundId"] = f"re_{secrets.token_hex(8)}"
                order["refundedAmount"] = order.get("refundedAmount", 0) + refund["amount"]
                if order["refundedAmount"] >= order["totalAmount"]:
                    self.transition(order["id"], OrderStatus.REFUNDED)
            print(f"[Orders] Refund {refund_id} {refund['status']} by {admin_email}")
            return copy.deepcopy(refund), copy.deepcopy(order)

    def list_refunds(self, status: str = None, start: datetime = None, end: datetime = None) -> list:
        """Refund requests across all orders, newest first, filtered by status and requestedAt range."""
        result = []
        for order in self.store.all():
            for r in order.get("refunds") or []:
                requested = datetime.fromisoformat(r["requestedAt"])
                if status and r["status"] != status:
                    continue
                if (start and requested < start) or (end and requested > end):
                    continue
                result.append(r)
        return sorted(result, key=lambda r: r["requestedAt"], reverse=True)

    # ── reads ──
    def find_by_id(self, order_id: str):
        order = self.store.get(order_id)
        return copy.deepcopy(order) if order else None

    def find_by_payment_reference(self, ref: str):
        if not ref:
            return None
        order = self.store.find(lambda o: ref in (o.get("paymentReference"), o.get("paymentIntentId")))
        return copy.deepcopy(order) if order else None

    def list_all(self) -> list:
        return self.store.all()

    # ── projections ──
    @staticmethod
    def estimate_completion(order: dict):
        status = order.get("status")
        if status == OrderStatus.COMPLETED.value:
            return order.get("completedAt")
        if status == OrderStatus.BUILDING.value and order.get("buildStartedAt"):
            hours = TIMELINE_HOURS.get(order.get("timeline"), DEFAULT_TIMELINE_HOURS)
            started = datetime.fromisoformat(order["buildStartedAt"])
            return (started + timedelta(hours=hours)).isoformat()
        return None

    def status_view(self, order: dict) -> dict:
        keys = ["id", "status", "currentBuildStep", "createdAt", "updatedAt", "paidAt",
                "buildStartedAt", "completedAt", "deliveryUrl", "adminUrl", "appName",
                "framework", "complexity", "timeline", "deliveryMethod"]
        view = {k: order.get(k) for k in keys}
        view["progress"] = order.get("progress") or 0
        view["buildLogs"] = list(order.get("buildLogs") or [])
        view["estimatedCompletion"] = self.estimate_completion(order)
        view["buildSteps"] = list(BUILD_STEPS)
        return view
