"""
Blood Allocation Engine - Configuration
========================================
All constants, shelf lives, urgency policy, locking and notification
parameters live here. Change these to adjust behavior without touching
any other module.
"""

import os

# ─── Paths ──────────────────────────────────────────────────────────────────

PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
DATA_DIR = os.path.join(PROJECT_ROOT, "data")
SAMPLE_SNAPSHOT = os.path.join(DATA_DIR, "sample_snapshot.json")


# ─── Blood Products ─────────────────────────────────────────────────────────

# Shelf life (days) used when a unit arrives without an expiration date
SHELF_LIFE_DAYS = {
    "whole_blood": 42,
    "red_blood_cells": 42,
    "plasma": 365,  # Frozen
}


# ─── Request Policy ─────────────────────────────────────────────────────────

# Higher rank is served first
URGENCY_RANK = {
    "Low": 0,
    "Medium": 1,
    "High": 2,
    "Critical": 3,
}

# Default time-box (hours) for a request created without a deadline.
# Past this, a request still waiting for stock moves to Expired.
REQUEST_TTL_HOURS = {
    "Critical": 24,
    "High": 72,
    "Medium": 7 * 24,
    "Low": 14 * 24,
}

# Urgency tiers whose shortages trigger an emergency broadcast
ESCALATION_TIERS = ("Critical",)


# ─── Ledger ─────────────────────────────────────────────────────────────────

# Bounded wait (seconds) for a facility partition lock before a cycle
# gives up with a retryable LedgerBusy
LEDGER_LOCK_TIMEOUT = float(os.environ.get("BLOODALLOC_LOCK_TIMEOUT", "5.0"))


# ─── Notifications ──────────────────────────────────────────────────────────

NOTIFICATION_QUEUE_SIZE = int(os.environ.get("BLOODALLOC_QUEUE_SIZE", "1000"))
NOTIFICATION_WEBHOOK_URL = os.environ.get("BLOODALLOC_WEBHOOK_URL", "")
WEBHOOK_TIMEOUT = 10  # seconds


# ─── API Server ─────────────────────────────────────────────────────────────

API_HOST = os.environ.get("BLOODALLOC_HOST", "0.0.0.0")
API_PORT = int(os.environ.get("BLOODALLOC_PORT", "8000"))
API_CORS_ORIGINS = ["*"]


# ─── Logging ────────────────────────────────────────────────────────────────

LOG_LEVEL = os.environ.get("BLOODALLOC_LOG_LEVEL", "INFO")
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


# ─── Demo Data ──────────────────────────────────────────────────────────────

# Blood type distribution in the donor population
BLOOD_TYPE_DISTRIBUTION = {
    "O+": 0.374,
    "O-": 0.066,
    "A+": 0.316,
    "A-": 0.063,
    "B+": 0.094,
    "B-": 0.015,
    "AB+": 0.034,
    "AB-": 0.006
}

# Share of requests per donation type
DONATION_TYPE_MIX = {
    "whole_blood": 0.45,
    "red_blood_cells": 0.40,
    "plasma": 0.15,
}

# Share of requests per urgency tier
URGENCY_MIX = {
    "Low": 0.30,
    "Medium": 0.35,
    "High": 0.25,
    "Critical": 0.10,
}

DEMO_FACILITIES = {
    "city-general@hospital.org": "City General Hospital",
    "st-marys@hospital.org": "St. Mary's Medical Center",
    "central@bloodbank.org": "Central Blood Bank",
    "northside@bloodbank.org": "Northside Blood Bank",
}
