"""
ForgeDesk — Configuration & Constants
Environment overrides, session/rate-limit thresholds, permission catalog,
default roles and the pricing table.
"""
import os

# ============================================================
# SESSIONS
# ============================================================
SESSION_MAX_AGE_HOURS = float(os.environ.get("SESSION_MAX_AGE_HOURS", "24"))
SESSION_INACTIVITY_HOURS = float(os.environ.get("SESSION_INACTIVITY_HOURS", "2"))
SESSION_SWEEP_INTERVAL_SECONDS = int(os.environ.get("SESSION_SWEEP_INTERVAL_SECONDS", "1800"))
SESSION_COOKIE_NAME = "admin_session"
SESSION_COOKIE_SECURE = os.environ.get("SESSION_COOKIE_SECURE", "false").lower() == "true"

# ============================================================
# LOGIN RATE LIMIT
# ============================================================
LOGIN_RATE_LIMIT_ATTEMPTS = int(os.environ.get("LOGIN_RATE_LIMIT_ATTEMPTS", "5"))
LOGIN_RATE_LIMIT_WINDOW_MINUTES = int(os.environ.get("LOGIN_RATE_LIMIT_WINDOW_MINUTES", "15"))
# Per-account: consecutive wrong passwords before the account locks
ACCOUNT_LOCKOUT_ATTEMPTS = int(os.environ.get("ACCOUNT_LOCKOUT_ATTEMPTS", "5"))

# ============================================================
# AUDIT
# ============================================================
AUDIT_LOG_MAX_ENTRIES = int(os.environ.get("AUDIT_LOG_MAX_ENTRIES", "1000"))

# ============================================================
# ADMIN ACCOUNT
# ============================================================
ADMIN_EMAIL = os.environ.get("ADMIN_EMAIL", "admin@forgedesk.dev")
ADMIN_PASSWORD = os.environ.get("ADMIN_PASSWORD", "change-me-admin")
ADMIN_ROLE = os.environ.get("ADMIN_ROLE", "Super Admin")

# ============================================================
# INTEGRATION
# ============================================================
PAYMENT_WEBHOOK_SECRET = os.environ.get("PAYMENT_WEBHOOK_SECRET", "whsec_local_dev")
APP_URL = os.environ.get("APP_URL", "http://localhost:8000")

# ============================================================
# PERMISSIONS
# ============================================================
VIEW_ORDERS = "view_orders"
UPDATE_ORDERS = "update_orders"
VIEW_CUSTOMERS = "view_customers"
MANAGE_REFUNDS = "manage_refunds"
VIEW_ANALYTICS = "view_analytics"
MANAGE_ROLES = "manage_roles"
SYSTEM_ADMIN = "system_admin"

PERMISSION_CATALOG = {
    VIEW_ORDERS:     {"name": "View Orders",     "category": "Order Management",     "level": 1,
                      "description": "View all orders and their details"},
    UPDATE_ORDERS:   {"name": "Manage Orders",   "category": "Order Management",     "level": 5,
                      "description": "Update order status, progress, delivery and notes"},
    VIEW_CUSTOMERS:  {"name": "View Customers",  "category": "Customer Management",  "level": 1,
                      "description": "View customer profiles and order history"},
    MANAGE_REFUNDS:  {"name": "Process Refunds", "category": "Analytics & Financial", "level": 7,
                      "description": "Process refunds and handle payment disputes"},
    VIEW_ANALYTICS:  {"name": "View Analytics",  "category": "Analytics & Financial", "level": 3,
                      "description": "Access analytics dashboards and financial reports"},
    MANAGE_ROLES:    {"name": "Manage Roles",    "category": "Security",             "level": 9,
                      "description": "Create, edit and delete admin roles"},
    SYSTEM_ADMIN:    {"name": "System Admin",    "category": "System",               "level": 10,
                      "description": "Full access to all resources"},
}

DEFAULT_ADMIN_PERMISSIONS = [
    VIEW_ORDERS, UPDATE_ORDERS, VIEW_CUSTOMERS, MANAGE_REFUNDS, VIEW_ANALYTICS, SYSTEM_ADMIN,
]

DEFAULT_ROLES = [
    {"name": "Super Admin", "description": "Full system access with all permissions",
     "permissions": [SYSTEM_ADMIN], "level": 10},
    {"name": "Admin", "description": "Standard admin access for day-to-day operations",
     "permissions": [VIEW_ORDERS, UPDATE_ORDERS, VIEW_CUSTOMERS, VIEW_ANALYTICS], "level": 7},
    {"name": "Support", "description": "Customer support with limited access",
     "permissions": [VIEW_ORDERS, VIEW_CUSTOMERS], "level": 3},
    {"name": "Finance", "description": "Financial operations and analytics access",
     "permissions": [VIEW_ORDERS, VIEW_ANALYTICS, MANAGE_REFUNDS], "level": 5},
]
PROTECTED_ROLE = "Super Admin"

# ============================================================
# PRICING
# ============================================================
COMPLEXITIES = ("simple", "medium", "complex")
TIMELINES = ("24h", "3d", "1w", "2w")
DELIVERY_METHODS = ("github", "zip", "deployed")

PRICING_TIERS = {
    "simple": {
        "basePrice": 299,
        "timeline": {
            "24h": {"multiplier": 2.5, "available": True},
            "3d":  {"multiplier": 1.5, "available": True},
            "1w":  {"multiplier": 1.0, "available": True},
            "2w":  {"multiplier": 0.8, "available": True},
        },
        "maxFeatures": 3,
        "includedFeatures": ["User Authentication", "Basic CRUD", "Responsive Design"],
        "deliverables": ["Source Code", "Basic Documentation", "Deployment Guide"],
    },
    "medium": {
        "basePrice": 799,
        "timeline": {
            "24h": {"multiplier": 2.0, "available": False},
            "3d":  {"multiplier": 1.8, "available": True},
            "1w":  {"multiplier": 1.0, "available": True},
            "2w":  {"multiplier": 0.9, "available": True},
        },
        "maxFeatures": 8,
        "includedFeatures": ["Advanced Authentication", "Database Integration", "API Development",
                             "Admin Panel", "Real-time Features"],
        "deliverables": ["Source Code", "API Documentation", "Database Schema",
                         "Deployment Guide", "Testing Suite"],
    },
    "complex": {
        "basePrice": 1999,
        "timeline": {
            "24h": {"multiplier": 3.0, "available": False},
            "3d":  {"multiplier": 2.5, "available": False},
            "1w":  {"multiplier": 1.2, "available": True},
            "2w":  {"multiplier": 1.0, "available": True},
        },
        "maxFeatures": 15,
        "includedFeatures": ["Enterprise Authentication", "Multi-database Support",
                             "Microservices Architecture", "Advanced Admin Panel",
                             "Real-time Analytics", "Payment Integration", "Email System",
                             "File Management"],
        "deliverables": ["Source Code", "Complete Documentation", "API Documentation",
                         "Database Schema", "Deployment Guide", "Testing Suite",
                         "Performance Report", "Security Audit"],
    },
}

FEATURE_ADDONS = {
    "Payment Integration":      {"price": 199, "timeline": "+1-2 days"},
    "Advanced Analytics":       {"price": 149, "timeline": "+1 day"},
    "Multi-language Support":   {"price": 99,  "timeline": "+1 day"},
    "Mobile App":               {"price": 499, "timeline": "+3-5 days"},
    "Custom Branding":          {"price": 79,  "timeline": "+0.5 days"},
    "SEO Optimization":         {"price": 129, "timeline": "+1 day"},
    "Social Media Integration": {"price": 89,  "timeline": "+0.5 days"},
    "Advanced Security":        {"price": 199, "timeline": "+1 day"},
}

TIMELINE_HOURS = {"24h": 24, "3d": 72, "1w": 168, "2w": 336}
DEFAULT_TIMELINE_HOURS = 168
TIMELINE_NAMES = {"24h": "24 Hours (Rush)", "3d": "3 Days", "1w": "1 Week", "2w": "2 Weeks"}

# ============================================================
# BUILD
# ============================================================
BUILD_STEPS = [
    "Analyzing requirements...",
    "Setting up project structure...",
    "Installing dependencies...",
    "Generating components...",
    "Configuring database...",
    "Setting up authentication...",
    "Running tests...",
    "Building for production...",
    "Preparing deployment...",
    "Finalizing delivery...",
]

# ============================================================
# VERSION
# ============================================================
VERSION = "1.4.0"
