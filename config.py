"""
File: config.py
Author notes: Runtime settings for ClinicDesk. Everything comes from the
environment (optionally a local .env) so the same code runs on the front-desk
PC and in tests without edits.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# Core config
DATA_DIR = Path(os.environ.get("CLINIC_DATA_DIR") or "data")
DB_PATH = Path(os.environ.get("CLINIC_DB_PATH") or DATA_DIR / "clinic.db")

# Remote snapshot (optional)
REMOTE_URL = (os.environ.get("CLINIC_REMOTE_URL") or "").rstrip("/")


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.environ.get(name, default))
    except (TypeError, ValueError):
        return default


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, default))
    except (TypeError, ValueError):
        return default


REMOTE_TIMEOUT = _env_float("CLINIC_REMOTE_TIMEOUT", 10.0)

# Follow-up appointments created from a visit
DEFAULT_FOLLOW_UP_TIME = os.environ.get("CLINIC_FOLLOW_UP_TIME") or "10:00"
DEFAULT_FOLLOW_UP_DURATION = _env_int("CLINIC_FOLLOW_UP_DURATION", 30)

HOST = os.environ.get("CLINIC_HOST") or "0.0.0.0"
PORT = _env_int("CLINIC_PORT", 5000)

DOCTOR_DEPARTMENTS = {
    "Dr. Tansukh Gosai": "General Physician",
    "Dr. Devang Gosai": "Ano Rectal Expert",
    "Dr. Dhara Gosai": "Dental Surgeon",
}
DEFAULT_DEPARTMENT = "General Physician"
