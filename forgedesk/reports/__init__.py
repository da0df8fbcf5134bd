"""
ForgeDesk — Reporting
Order statistics, analytics dashboard, customer and financial reports.
All functions are read-only projections over a list of order records.
"""
from collections import defaultdict
from datetime import datetime, timedelta

from forgedesk.db import _n
from forgedesk.orders import OrderStatus, REVENUE_STATUSES

_REVENUE = {s.value for s in REVENUE_STATUSES}


def _created(order: dict) -> datetime:
    return datetime.fromisoformat(order["createdAt"])

def _revenue(orders: list) -> float:
    return sum(_n(o.get("totalAmount")) for o in orders)

def _growth(current: float, previous: float) -> float:
    return round((current - previous) / previous * 100, 1) if previous > 0 else 0

def _month_start(d: datetime, back: int = 0) -> datetime:
    month_index = d.year * 12 + (d.month - 1) - back
    return datetime(month_index // 12, month_index % 12 + 1, 1)


# ============================================================
# ADMIN ORDER LIST
# ============================================================
def filter_orders(orders: list, status: str = None, search: str = None,
                  sort_by: str = "createdAt", sort_order: str = "desc") -> list:
    result = list(orders)
    if status and status != "all":
        result = [o for o in result if o.get("status") == status]
    if search:
        q = search.lower()
        result = [o for o in result if any(q in str(o.get(k) or "").lower()
                  for k in ("customerName", "customerEmail", "appName", "id"))]

    def key(o):
        v = o.get(sort_by)
        if v is None:
            return (0, "")
        if isinstance(v, (int, float)):
            return (1, v)
        return (2, str(v).lower())

    return sorted(result, key=key, reverse=(sort_order != "asc"))


def order_stats(orders: list, now: datetime) -> dict:
    stats = {s.value: 0 for s in OrderStatus}
    stats.update({"total": len(orders), "totalRevenue": 0, "avgOrderValue": 0,
                  "completionRate": 0, "monthlyRevenue": 0, "weeklyOrders": 0})
    month_start = _month_start(now)
    week_ago = now - timedelta(days=7)

    for o in orders:
        stats[o["status"]] = stats.get(o["status"], 0) + 1
        created = _created(o)
        if o["status"] in _REVENUE:
            stats["totalRevenue"] += _n(o.get("totalAmount"))
            if created >= month_start:
                stats["monthlyRevenue"] += _n(o.get("totalAmount"))
        if created >= week_ago:
            stats["weeklyOrders"] += 1

    if orders:
        paid_count = sum(stats[s] for s in _REVENUE)
        stats["avgOrderValue"] = round(stats["totalRevenue"] / max(paid_count, 1), 2)
        stats["completionRate"] = round(stats[OrderStatus.COMPLETED.value] / len(orders) * 100, 1)
    return stats


# ============================================================
# ANALYTICS DASHBOARD
# ============================================================
def analytics(orders: list, now: datetime) -> dict:
    paid = [o for o in orders if o["status"] in _REVENUE]
    today = datetime(now.year, now.month, now.day)
    week_ago = now - timedelta(days=7)
    month_start = _month_start(now)
    prev_month_start = _month_start(now, 1)

    daily = [o for o in paid if _created(o) >= today]
    weekly = [o for o in paid if _created(o) >= week_ago]
    monthly = [o for o in paid if _created(o) >= month_start]
    previous = [o for o in paid if prev_month_start <= _created(o) < month_start]

    # customers: new = every order this month, returning = has earlier orders too
    by_email = defaultdict(list)
    for o in orders:
        by_email[o["customerEmail"].lower()].append(o)
    new_customers, returning = 0, 0
    for customer_orders in by_email.values():
        this_month = [o for o in customer_orders if _created(o) >= month_start]
        if this_month:
            if len(this_month) == len(customer_orders):
                new_customers += 1
            else:
                returning += 1

    daily_timeline = []
    for i in range(29, -1, -1):
        day = today - timedelta(days=i)
        day_orders = [o for o in paid if day <= _created(o) < day + timedelta(days=1)]
        daily_timeline.append({"date": day.date().isoformat(), "orders": len(day_orders),
                               "revenue": _revenue(day_orders)})

    monthly_timeline = []
    for i in range(11, -1, -1):
        start, end = _month_start(now, i), _month_start(now, i - 1)
        month_orders = [o for o in paid if start <= _created(o) < end]
        monthly_timeline.append({"month": start.strftime("%Y-%m"), "orders": len(month_orders),
                                 "revenue": _revenue(month_orders)})

    frameworks = defaultdict(lambda: {"orders": 0, "revenue": 0})
    for o in paid:
        f = frameworks[o.get("framework") or "Unknown"]
        f["orders"] += 1
        f["revenue"] += _n(o.get("totalAmount"))
    top = sorted(({"framework": k, **v} for k, v in frameworks.items()),
                 key=lambda x: x["revenue"], reverse=True)[:10]

    breakdown = defaultdict(int)
    for o in orders:
        breakdown[o["status"]] += 1

    total_revenue = _revenue(paid)
    completed = sum(1 for o in orders if o["status"] == OrderStatus.COMPLETED.value)
    return {
        "revenue": {
            "total": total_revenue, "monthly": _revenue(monthly), "weekly": _revenue(weekly),
            "daily": _revenue(daily), "previousMonth": _revenue(previous),
            "monthlyGrowth": _growth(_revenue(monthly), _revenue(previous)),
        },
        "orders": {
            "total": len(orders), "monthly": len(monthly), "weekly": len(weekly),
            "daily": len(daily), "previousMonth": len(previous),
            "monthlyGrowth": _growth(len(monthly), len(previous)),
            "avgOrderValue": round(total_revenue / len(paid), 2) if paid else 0,
            "completionRate": round(completed / len(orders) * 100, 1) if orders else 0,
        },
        "customers": {
            "total": len(by_email), "new": new_customers, "returning": returning,
            "retention": round(returning / len(by_email) * 100, 1) if by_email else 0,
        },
        "timeline": {"daily": daily_timeline, "monthly": monthly_timeline},
        "topProducts": top,
        "statusBreakdown": dict(breakdown),
    }


# ============================================================
# CUSTOMERS
# ============================================================
CUSTOMER_TIERS = [("enterprise", 5000), ("premium", 1500), ("standard", 0)]

def customer_report(orders: list) -> list:
    customers = {}
    for o in sorted(orders, key=lambda x: x["createdAt"]):
        email = o["customerEmail"].lower()
        c = customers.setdefault(email, {
            "email": o["customerEmail"], "name": o.get("customerName"), "company": o.get("company"),
            "phone": o.get("phone"), "totalOrders": 0, "totalSpent": 0, "completedOrders": 0,
            "cancelledOrders": 0, "refundedOrders": 0, "firstOrderAt": o["createdAt"],
            "lastOrderAt": o["createdAt"], "orderIds": [],
        })
        c["totalOrders"] += 1
        c["orderIds"].append(o["id"])
        c["lastOrderAt"] = o["createdAt"]
        c["company"] = o.get("company") or c["company"]
        if o["status"] in _REVENUE:
            c["totalSpent"] += _n(o.get("totalAmount"))
        if o["status"] == OrderStatus.COMPLETED.value:
            c["completedOrders"] += 1
        elif o["status"] == OrderStatus.CANCELLED.value:
            c["cancelledOrders"] += 1
        elif o["status"] == OrderStatus.REFUNDED.value:
            c["refundedOrders"] += 1

    for c in customers.values():
        c["avgOrderValue"] = round(c["totalSpent"] / c["totalOrders"], 2)
        c["tier"] = next(name for name, floor in CUSTOMER_TIERS if c["totalSpent"] >= floor)
    return sorted(customers.values(), key=lambda c: c["totalSpent"], reverse=True)


# ============================================================
# FINANCIAL
# ============================================================
def financial_summary(orders: list, now: datetime) -> dict:
    paid = [o for o in orders if o["status"] in _REVENUE]
    refunds = [r for o in orders for r in o.get("refunds") or []]
    approved = [r for r in refunds if r["status"] == "approved"]
    month_start = _month_start(now)
    last_month_start = _month_start(now, 1)
    year_start = datetime(now.year, 1, 1)

    this_month = _revenue([o for o in paid if _created(o) >= month_start])
    last_month = _revenue([o for o in paid if last_month_start <= _created(o) < month_start])

    def breakdown(field):
        rows = defaultdict(lambda: {"orders": 0, "revenue": 0})
        for o in paid:
            r = rows[o.get(field) or "Unknown"]
            r["orders"] += 1
            r["revenue"] += _n(o.get("totalAmount"))
        return [{field: k, **v} for k, v in sorted(rows.items(), key=lambda kv: -kv[1]["revenue"])]

    return {
        "revenue": {
            "total": _revenue(paid),
            "thisMonth": this_month,
            "lastMonth": last_month,
            "thisYear": _revenue([o for o in paid if _created(o) >= year_start]),
            "monthlyGrowth": _growth(this_month, last_month),
        },
        "orders": {
            "total": len(orders),
            "paid": len(paid),
            "refunded": sum(1 for o in orders if o["status"] == OrderStatus.REFUNDED.value),
            "cancelled": sum(1 for o in orders if o["status"] == OrderStatus.CANCELLED.value),
            "avgOrderValue": round(_revenue(paid) / len(paid), 2) if paid else 0,
        },
        "refunds": {
            "count": len(approved),
            "amount": sum(_n(r.get("amount")) for r in approved),
            "pending": sum(1 for r in refunds if r["status"] == "pending"),
            "items": sorted(refunds, key=lambda r: r["requestedAt"], reverse=True),
        },
        "byComplexity": breakdown("complexity"),
        "byFramework": breakdown("framework"),
    }
