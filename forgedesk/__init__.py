"""
ForgeDesk — Admin & Order Backend Package (v1.4.0)

Architecture:
  forgedesk/
  ├── config/     — Constants, session thresholds, permission catalog, pricing table
  ├── db/         — In-memory stores: sessions, audit log, login attempts, orders
  ├── auth/       — bcrypt passwords, rate limiting, bound sessions, audit trail
  ├── pricing/    — Tier × timeline × add-on price computation and quotes
  ├── orders/     — Order lifecycle engine: creation, transitions, build, payments, refunds
  ├── reports/    — Order stats, analytics, customers, financial summary
  ├── roles/      — Admin roles and permission resolution
  ├── scheduler/  — Background sweeper for expired sessions
  └── server.py   — FastAPI routing layer

Each module is self-contained with clear imports and no circular dependencies.
"""
