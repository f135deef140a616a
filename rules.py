"""
File: rules.py
Author notes: The front-desk save operations and the cross-entity side effects
they carry. Each operation validates its whole form before touching the store,
writes the primary entity first, then the derived records (follow-up
appointment, prescription) best-effort, and only then releases the batched
bus events so subscribers see the complete multi-entity save.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Callable, List, Optional

import config
import queries
from clinic_store import DuplicateIdError, RecordStore, StoreUnavailableError
from events import EventBus, Topic, event_for
from id_gen import next_id
from schemas import (
    APPOINTMENT_STATUSES,
    PRESCRIPTION_STATUSES,
    RecordValidationError,
    full_name,
    iso_day,
    normalize_appointment,
    normalize_medications,
    normalize_patient,
    normalize_prescription,
    normalize_visit,
)

logger = logging.getLogger("uvicorn.error")

PATIENT_REQUIRED = ("firstName", "lastName", "gender", "phone", "address")
# Keys a patient edit may not overwrite directly.
PATIENT_PROTECTED = ("id", "visits", "visitRecords", "registrationDate", "prescription")


class RecordNotFoundError(LookupError):
    pass


@dataclass
class SaveOutcome:
    record: dict
    appointment: Optional[dict] = None
    prescription: Optional[dict] = None
    warnings: List[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "record": self.record,
            "appointment": self.appointment,
            "prescription": self.prescription,
            "warnings": self.warnings,
        }


def _now() -> str:
    return datetime.now().isoformat(timespec="seconds")


def _filled(value) -> bool:
    return value is not None and str(value).strip() != ""


def _require(form: dict, fields, what: str):
    missing = [f for f in fields if not _filled(form.get(f))]
    if missing:
        raise RecordValidationError(f"{what}: missing required field(s): {', '.join(missing)}")


def _get_patient(store: RecordStore, patient_id: str) -> dict:
    patient = store.find("patients", patient_id)
    if patient is None:
        raise RecordNotFoundError(f"Patient not found: {patient_id}")
    return patient


def department_for(doctor: Optional[str]) -> str:
    name = (doctor or "").strip()
    if name in config.DOCTOR_DEPARTMENTS:
        return config.DOCTOR_DEPARTMENTS[name]
    lowered = name.lower()
    for known, department in config.DOCTOR_DEPARTMENTS.items():
        first = known.replace("Dr.", "").split()[0].lower()
        if lowered and first in lowered:
            return department
    return config.DEFAULT_DEPARTMENT


def _derive(outcome: SaveOutcome, label: str, write: Callable[[], dict]) -> Optional[dict]:
    """Run a derived-record write; failure is logged and reported, never raised."""
    try:
        return write()
    except (StoreUnavailableError, DuplicateIdError, RecordValidationError) as e:
        logger.warning("Derived %s not saved: %s", label, e)
        outcome.warnings.append(f"{label} not saved: {e}")
        return None


def _medication_lines(lines) -> List[dict]:
    """Normalize form medication rows, dropping blank ones."""
    return normalize_medications([m for m in lines or [] if isinstance(m, dict) and _filled(m.get("name"))])


def _prescription_section(section: Optional[dict]) -> Optional[dict]:
    """Validate an embedded prescription block; None when the form has none."""
    if not section:
        return None
    medications = _medication_lines(section.get("medications"))
    if not medications and not _filled(section.get("diagnosis")):
        return None
    _require(section, ("doctorName", "diagnosis"), "Prescription")
    return {**section, "medications": medications}


# --- patients ---

def register_patient(store: RecordStore, bus: EventBus, form: dict, today: Optional[date] = None) -> SaveOutcome:
    _require(form, PATIENT_REQUIRED, "Patient registration")
    if not _filled(form.get("age")) and not _filled(form.get("dateOfBirth")):
        raise RecordValidationError("Patient registration: missing required field(s): age or dateOfBirth")
    today = today or date.today()
    patient_id = next_id("PAT")
    patient = normalize_patient(
        {**form, "id": patient_id, "visits": 1, "visitRecords": [], "registrationDate": _now()},
        today=today,
    )
    section = _prescription_section(form.get("prescription"))
    prescription = None
    if section:
        prescription = normalize_prescription(
            {
                **section,
                "id": next_id("PRESC"),
                "patientId": patient_id,
                "patientName": full_name(patient),
                "prescriptionDate": today.isoformat(),
                "status": "Active",
            }
        )

    outcome = SaveOutcome(record=patient)
    with bus.batch():
        store.append("patients", patient)
        bus.publish(event_for(Topic.PATIENT_ADDED, patient_id))
        if prescription:

            def write_prescription():
                store.append("prescriptions", prescription)
                bus.publish(event_for(Topic.PRESCRIPTION_ADDED, prescription["id"]))
                return prescription

            outcome.prescription = _derive(outcome, "prescription", write_prescription)
    logger.info("Registered patient %s", patient_id)
    return outcome


def edit_patient(
    store: RecordStore,
    bus: EventBus,
    patient_id: str,
    changes: dict,
    today: Optional[date] = None,
) -> SaveOutcome:
    """Edit demographics; a prescription block merges into today's prescription for this patient if one exists."""
    today = today or date.today()
    existing = _get_patient(store, patient_id)
    edits = {k: v for k, v in (changes or {}).items() if k not in PATIENT_PROTECTED}
    merged = {**existing, **edits}
    _require(merged, PATIENT_REQUIRED, "Patient edit")
    if _filled(edits.get("age")) and "dateOfBirth" not in edits:
        merged.pop("dateOfBirth", None)
    if _filled(edits.get("dateOfBirth")) and "age" not in edits:
        merged.pop("age", None)
    patient = normalize_patient(merged, today=today)
    section = _prescription_section((changes or {}).get("prescription"))

    day = today.isoformat()
    same_day = None
    if section:
        same_day = next(
            (
                p
                for p in queries.prescriptions_for_patient(store.read("prescriptions"), patient_id)
                if iso_day(p.get("prescriptionDate")) == day
            ),
            None,
        )
        prescription = normalize_prescription(
            {
                **(same_day or {}),
                **section,
                "id": same_day["id"] if same_day else next_id("PRESC"),
                "patientId": patient_id,
                "patientName": full_name(patient),
                "prescriptionDate": day,
                "status": (same_day or {}).get("status") or "Active",
            }
        )

    outcome = SaveOutcome(record=patient)
    with bus.batch():
        if not store.update("patients", patient_id, patient):
            raise RecordNotFoundError(f"Patient not found: {patient_id}")
        bus.publish(event_for(Topic.PATIENT_UPDATED, patient_id))
        if section:

            def write_prescription():
                if same_day and store.update("prescriptions", same_day["id"], prescription):
                    bus.publish(event_for(Topic.PRESCRIPTION_UPDATED, prescription["id"]))
                else:
                    store.append("prescriptions", prescription)
                    bus.publish(event_for(Topic.PRESCRIPTION_ADDED, prescription["id"]))
                return prescription

            outcome.prescription = _derive(outcome, "prescription", write_prescription)
    return outcome


def delete_patient(store: RecordStore, bus: EventBus, patient_id: str) -> int:
    """Remove a patient and their prescriptions; appointments and visits stay as orphans. Returns prescriptions removed."""
    with bus.batch():
        if not store.remove("patients", patient_id):
            raise RecordNotFoundError(f"Patient not found: {patient_id}")
        bus.publish(event_for(Topic.PATIENT_DELETED, patient_id))
        removed = store.remove_where("prescriptions", "patientId", patient_id)
        if removed:
            bus.publish(event_for(Topic.PRESCRIPTION_UPDATED))
    logger.info("Deleted patient %s (%d prescriptions removed)", patient_id, removed)
    return removed


# --- visits ---

def record_visit(
    store: RecordStore,
    bus: EventBus,
    patient_id: str,
    form: dict,
    today: Optional[date] = None,
) -> SaveOutcome:
    today = today or date.today()
    patient = _get_patient(store, patient_id)
    _require(form, ("doctorName",), "Visit")
    follow_up = form.get("followUpDate")
    if _filled(follow_up) and not iso_day(follow_up):
        raise RecordValidationError(f"Visit: followUpDate is not a date: {follow_up!r}")

    name = full_name(patient)
    doctor = str(form["doctorName"]).strip()
    visit_id = next_id("VISIT")
    medications = _medication_lines(form.get("medications"))
    prescription_id = next_id("PRESC") if medications else ""
    visit = normalize_visit(
        {
            **form,
            "id": visit_id,
            "patientId": patient_id,
            "patientName": name,
            "visitDate": form.get("visitDate") or today.isoformat(),
            "medications": medications,
            "prescriptionId": prescription_id,
            "createdAt": _now(),
        }
    )

    outcome = SaveOutcome(record=visit)
    with bus.batch():
        store.append("visits", visit)
        bus.publish(event_for(Topic.VISIT_ADDED, visit_id))

        def recount():
            history = queries.visits_for_patient(store.read("visits"), patient)
            store.update("patients", patient_id, {"visits": 1 + len(history)})
            bus.publish(event_for(Topic.PATIENT_UPDATED, patient_id))
            return history

        _derive(outcome, "visit counter", recount)

        if visit["followUpDate"]:

            def write_follow_up():
                appointment = normalize_appointment(
                    {
                        "id": next_id("APT"),
                        "patientId": patient_id,
                        "patientName": name,
                        "doctor": doctor,
                        "department": department_for(doctor),
                        "date": visit["followUpDate"],
                        "time": config.DEFAULT_FOLLOW_UP_TIME,
                        "duration": config.DEFAULT_FOLLOW_UP_DURATION,
                        "type": "Follow-up",
                        "status": "confirmed",
                        "phone": patient.get("phone") or "",
                        "notes": f"Auto-generated from visit {visit_id} - Follow-up for: {visit['diagnosis']}",
                        "visitId": visit_id,
                    }
                )
                store.append("appointments", appointment)
                bus.publish(event_for(Topic.APPOINTMENT_ADDED, appointment["id"]))
                logger.info("Auto-created follow-up appointment for %s on %s", patient_id, visit["followUpDate"])
                return appointment

            outcome.appointment = _derive(outcome, "follow-up appointment", write_follow_up)

        if medications:

            def write_prescription():
                prescription = normalize_prescription(
                    {
                        "id": prescription_id,
                        "patientId": patient_id,
                        "patientName": name,
                        "doctorName": doctor,
                        "medications": medications,
                        "diagnosis": visit["diagnosis"],
                        "investigation": form.get("investigation"),
                        "fee": visit["fee"],
                        "notes": form.get("prescriptionNotes") or visit["notes"],
                        "prescriptionDate": visit["visitDate"],
                        "status": "Active",
                        "visitId": visit_id,
                    }
                )
                store.append("prescriptions", prescription)
                bus.publish(event_for(Topic.PRESCRIPTION_ADDED, prescription_id))
                return prescription

            outcome.prescription = _derive(outcome, "prescription", write_prescription)
    return outcome


# --- appointments ---

def book_appointment(store: RecordStore, bus: EventBus, form: dict) -> SaveOutcome:
    _require(form, ("doctor", "date", "time"), "Appointment")
    payload = dict(form)
    patient_id = payload.get("patientId")
    if patient_id:
        patient = store.find("patients", patient_id)
        if patient:
            if not _filled(payload.get("patientName")):
                payload["patientName"] = full_name(patient)
            if not _filled(payload.get("phone")):
                payload["phone"] = patient.get("phone") or ""
    if not _filled(payload.get("patientName")) and not _filled(payload.get("patient")):
        raise RecordValidationError("Appointment: missing required field(s): patientName or patientId")
    now = _now()
    appointment = normalize_appointment(
        {
            "status": "confirmed",
            **payload,
            "id": next_id("APT"),
            "department": payload.get("department") or department_for(payload.get("doctor")),
            "createdAt": now,
            "lastUpdated": now,
        }
    )
    with bus.batch():
        store.append("appointments", appointment)
        bus.publish(event_for(Topic.APPOINTMENT_ADDED, appointment["id"]))
    return SaveOutcome(record=appointment)


def set_appointment_status(store: RecordStore, bus: EventBus, appointment_id: str, status: str) -> dict:
    """Direct status mutation; no other entity is touched."""
    if status not in APPOINTMENT_STATUSES:
        raise RecordValidationError(f"Appointment: invalid status {status!r}")
    with bus.batch():
        if not store.update("appointments", appointment_id, {"status": status, "lastUpdated": _now()}):
            raise RecordNotFoundError(f"Appointment not found: {appointment_id}")
        bus.publish(event_for(Topic.APPOINTMENT_UPDATED, appointment_id))
    return store.find("appointments", appointment_id)


def mark_done(store: RecordStore, bus: EventBus, appointment_id: str) -> dict:
    return set_appointment_status(store, bus, appointment_id, "done")


# --- prescriptions ---

def create_prescription(store: RecordStore, bus: EventBus, form: dict, today: Optional[date] = None) -> SaveOutcome:
    _require(form, ("patientId", "doctorName"), "Prescription")
    today = today or date.today()
    patient = _get_patient(store, form["patientId"])
    medications = _medication_lines(form.get("medications"))
    prescription = normalize_prescription(
        {
            **form,
            "id": next_id("PRESC"),
            "patientName": form.get("patientName") or full_name(patient),
            "medications": medications,
            "prescriptionDate": form.get("prescriptionDate") or today.isoformat(),
            "status": form.get("status") or "Active",
        }
    )
    with bus.batch():
        store.append("prescriptions", prescription)
        bus.publish(event_for(Topic.PRESCRIPTION_ADDED, prescription["id"]))
    return SaveOutcome(record=prescription)


def set_prescription_status(store: RecordStore, bus: EventBus, prescription_id: str, status: str) -> dict:
    if status not in PRESCRIPTION_STATUSES:
        raise RecordValidationError(f"Prescription: invalid status {status!r}")
    with bus.batch():
        if not store.update("prescriptions", prescription_id, {"status": status}):
            raise RecordNotFoundError(f"Prescription not found: {prescription_id}")
        bus.publish(event_for(Topic.PRESCRIPTION_UPDATED, prescription_id))
    return store.find("prescriptions", prescription_id)
