"""
Read views over freshly read collections.

Everything here is a pure function over lists of dicts: no store access, no
mutation of the inputs, and absent optional fields (email, phone, diagnosis)
simply fail to match instead of raising.
"""

import logging
from datetime import date, datetime
from typing import Dict, Iterable, List, Optional, Sequence

from schemas import RecordValidationError, full_name, iso_day, normalize_visit

logger = logging.getLogger("uvicorn.error")

PATIENT_SEARCH_FIELDS = ("firstName", "lastName", "email", "phone", "id")
APPOINTMENT_SEARCH_FIELDS = ("patientName", "doctor", "department", "phone", "type")
PRESCRIPTION_SEARCH_FIELDS = ("patientName", "doctorName", "diagnosis", "id")
VISIT_SEARCH_FIELDS = ("patientName", "doctorName", "diagnosis", "symptoms", "visitType")


def _lower(value) -> str:
    if value is None:
        return ""
    return str(value).strip().lower()


def search(entities: Iterable[dict], term: Optional[str], fields: Sequence[str]) -> List[dict]:
    """Case-insensitive substring match over `fields`; a blank term matches everything."""
    needle = _lower(term)
    items = list(entities)
    if not needle:
        return items
    out = []
    for e in items:
        haystacks = [_lower(e.get(f)) for f in fields]
        if "firstName" in fields:
            haystacks.append(_lower(full_name(e)))
        if any(needle in h for h in haystacks):
            out.append(e)
    return out


def search_patients(patients: Iterable[dict], term: Optional[str]) -> List[dict]:
    return search(patients, term, PATIENT_SEARCH_FIELDS)


def filter_equals(entities: Iterable[dict], **criteria) -> List[dict]:
    """Equality filters; None or "all" (any case) disables a criterion."""
    active = {k: _lower(v) for k, v in criteria.items() if v is not None and _lower(v) not in ("", "all")}
    return [e for e in entities if all(_lower(e.get(k)) == v for k, v in active.items())]


def filter_by_day(entities: Iterable[dict], day, field: str = "date") -> List[dict]:
    target = iso_day(day)
    return [e for e in entities if target and iso_day(e.get(field)) == target]


def filter_by_window(entities: Iterable[dict], start=None, end=None, field: str = "date") -> List[dict]:
    """Inclusive [start, end] on the calendar day of `field`; entities with no parseable day are dropped."""
    lo, hi = iso_day(start), iso_day(end)
    out = []
    for e in entities:
        day = iso_day(e.get(field))
        if not day:
            continue
        if lo and day < lo:
            continue
        if hi and day > hi:
            continue
        out.append(e)
    return out


def appointments_view(
    appointments: Iterable[dict],
    day=None,
    status: Optional[str] = "all",
    view: str = "day",
) -> List[dict]:
    """What the appointments screen lists: one day (default today) or everything, optionally by status."""
    items = list(appointments)
    if view == "day":
        items = filter_by_day(items, day or date.today())
    items = filter_equals(items, status=status)
    return sorted(items, key=lambda a: (iso_day(a.get("date")), a.get("time") or ""))


def sort_by_registration(patients: Iterable[dict]) -> List[dict]:
    """Newest registration first; unparseable dates sink to the bottom."""

    def key(p):
        raw = str(p.get("registrationDate") or "")
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            return datetime.fromisoformat(raw).replace(tzinfo=None)
        except ValueError:
            return datetime.min

    return sorted(patients, key=key, reverse=True)


def prescriptions_for_patient(prescriptions: Iterable[dict], patient_id: str) -> List[dict]:
    return [p for p in prescriptions if patient_id and p.get("patientId") == patient_id]


def appointments_for_patient(appointments: Iterable[dict], patient: dict) -> List[dict]:
    """Join by patientId; appointments written without one fall back to the patient's name."""
    pid = patient.get("id")
    name = _lower(full_name(patient))
    out = []
    for a in appointments:
        if a.get("patientId"):
            if a.get("patientId") == pid:
                out.append(a)
        elif name and _lower(a.get("patientName") or a.get("patient")) == name:
            out.append(a)
    return out


def visits_for_patient(visits: Iterable[dict], patient: dict) -> List[dict]:
    """Collection visits plus legacy embedded visitRecords, deduped by id, oldest first."""
    pid = patient.get("id")
    merged: Dict[str, dict] = {}
    order: List[dict] = []
    legacy = []
    for rec in patient.get("visitRecords") or []:
        try:
            legacy.append(normalize_visit({**rec, "patientId": pid, "patientName": full_name(patient)}))
        except RecordValidationError:
            logger.warning("Skipping unreadable embedded visit record for patient %s", pid)
    for v in legacy + [v for v in visits if pid and v.get("patientId") == pid]:
        vid = v.get("id")
        if vid:
            if vid in merged:
                continue
            merged[vid] = v
        order.append(v)
    return sorted(order, key=lambda v: (iso_day(v.get("visitDate") or v.get("date")), v.get("visitTime") or ""))


def medication_history(prescriptions: Iterable[dict], patient_id: str) -> List[dict]:
    """Every medication line prescribed to a patient, flattened with its date and doctor, newest first."""
    lines = []
    for p in prescriptions_for_patient(prescriptions, patient_id):
        for med in p.get("medications") or []:
            if not isinstance(med, dict):
                continue
            lines.append(
                {
                    **med,
                    "prescriptionId": p.get("id"),
                    "prescriptionDate": iso_day(p.get("prescriptionDate") or p.get("date")),
                    "doctorName": p.get("doctorName") or "",
                }
            )
    return sorted(lines, key=lambda m: m["prescriptionDate"], reverse=True)


def dashboard_counts(snapshot: Dict[str, List[dict]], today=None) -> Dict[str, int]:
    day = iso_day(today or date.today())
    appointments = snapshot.get("appointments") or []
    todays = filter_by_day(appointments, day)
    return {
        "patients": len(snapshot.get("patients") or []),
        "appointments": len(appointments),
        "prescriptions": len(snapshot.get("prescriptions") or []),
        "visits": len(snapshot.get("visits") or []),
        "appointmentsToday": len(todays),
        "completedToday": len(filter_equals(todays, status="done")),
        "activePrescriptions": len(filter_equals(snapshot.get("prescriptions") or [], status="Active")),
    }
