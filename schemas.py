"""
File: schemas.py
Author notes: One canonical shape per clinical concept. Screens used to write
two medication shapes, two visit shapes and either age or birthdate for a
patient; every writer now goes through the normalize_* helpers below, which
accept the old keys and hand back the canonical dict that gets persisted.
"""

import re
from datetime import date, datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

COLLECTIONS = ("patients", "appointments", "prescriptions", "visits")

APPOINTMENT_STATUSES = ("confirmed", "pending", "urgent", "cancelled", "done")
PRESCRIPTION_STATUSES = ("Active", "Completed", "Cancelled")
MAX_PATIENT_IMAGES = 4

_TIME_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


class RecordValidationError(ValueError):
    """Raised before any store write when a form is missing or has bad fields."""


def _text(value) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _pick(raw: dict, *keys, default=None):
    for k in keys:
        if k in raw and raw[k] is not None and raw[k] != "":
            return raw[k]
    return default


def iso_day(value) -> str:
    """Return the YYYY-MM-DD part of a date, datetime or ISO string ('' if unparseable)."""
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    text = _text(value)
    if not text:
        return ""
    head = text.split("T")[0].split(" ")[0]
    try:
        return date.fromisoformat(head).isoformat()
    except ValueError:
        return ""


def _now_iso() -> str:
    return datetime.now().isoformat(timespec="seconds")


class _Record(BaseModel):
    model_config = ConfigDict(extra="ignore")


class Medication(_Record):
    id: str = ""
    name: str
    dose: str = ""
    qty: str = ""
    frequency: List[str] = Field(default_factory=list)
    duration: str = ""
    instructions: str = ""

    @field_validator("name")
    @classmethod
    def _name_required(cls, v):
        if not v.strip():
            raise ValueError("medication name is required")
        return v.strip()


class Patient(_Record):
    id: str
    firstName: str
    lastName: str
    age: Optional[int] = None
    dateOfBirth: Optional[str] = None
    gender: str = ""
    phone: str = ""
    address: str = ""
    email: str = ""
    bloodType: str = ""
    allergies: str = ""
    medicalHistory: str = ""
    registrationDate: str = ""
    visits: int = 1
    visitRecords: List[dict] = Field(default_factory=list)
    profileImage: str = ""
    additionalImages: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check(self):
        if self.age is None and not self.dateOfBirth:
            raise ValueError("either age or dateOfBirth is required")
        if self.age is not None and not 0 <= self.age <= 150:
            raise ValueError("age must be between 0 and 150")
        images = (1 if self.profileImage else 0) + len(self.additionalImages)
        if images > MAX_PATIENT_IMAGES:
            raise ValueError(f"at most {MAX_PATIENT_IMAGES} images per patient")
        if self.visits < 1:
            raise ValueError("visits counter starts at 1")
        return self


class Appointment(_Record):
    id: str
    patientId: str = ""
    patientName: str
    doctor: str
    department: str = ""
    date: str
    time: str
    duration: int = 30
    type: str = "Consultation"
    status: Literal["confirmed", "pending", "urgent", "cancelled", "done"] = "pending"
    phone: str = ""
    notes: str = ""
    visitId: str = ""
    createdAt: str = ""
    lastUpdated: str = ""

    @field_validator("date")
    @classmethod
    def _iso_date(cls, v):
        day = iso_day(v)
        if not day:
            raise ValueError(f"invalid date: {v!r}")
        return day

    @field_validator("time")
    @classmethod
    def _hhmm(cls, v):
        if not _TIME_RE.match(v):
            raise ValueError(f"time must be HH:MM, got {v!r}")
        return v


class Prescription(_Record):
    id: str
    patientId: str
    patientName: str = ""
    doctorName: str
    medications: List[Medication] = Field(default_factory=list)
    diagnosis: str = ""
    investigation: str = ""
    fee: str = ""
    notes: str = ""
    prescriptionDate: str
    status: Literal["Active", "Completed", "Cancelled"] = "Active"
    visitId: str = ""
    createdAt: str = ""


class Visit(_Record):
    id: str
    patientId: str = ""
    patientName: str = ""
    visitDate: str
    visitTime: str = ""
    visitType: str = ""
    doctorName: str = ""
    diagnosis: str = ""
    symptoms: str = ""
    treatment: str = ""
    medications: List[Medication] = Field(default_factory=list)
    notes: str = ""
    followUpDate: str = ""
    status: str = "completed"
    fee: str = ""
    prescriptionId: str = ""
    createdAt: str = ""


def _validated(model, payload: dict) -> dict:
    try:
        return model(**payload).model_dump()
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or model.__name__}: {err['msg']}" for err in e.errors()
        )
        raise RecordValidationError(f"Invalid {model.__name__.lower()}: {problems}") from e


def normalize_medication(raw: dict) -> dict:
    """Accept both {name, dosage, frequency[], duration, instructions} and {name, dose, qty}."""
    raw = raw or {}
    frequency = raw.get("frequency") or []
    if isinstance(frequency, str):
        frequency = [frequency]
    frequency = [_text(f) for f in frequency if _text(f)]
    dose = _text(_pick(raw, "dose", "dosage", default=""))
    if not dose and frequency:
        dose = ", ".join(frequency)
    return _validated(
        Medication,
        {
            "id": _text(raw.get("id")),
            "name": _text(raw.get("name")),
            "dose": dose,
            "qty": _text(_pick(raw, "qty", "quantity", default="")),
            "frequency": frequency,
            "duration": _text(raw.get("duration")),
            "instructions": _text(raw.get("instructions")),
        },
    )


def normalize_medications(lines) -> List[dict]:
    return [normalize_medication(m) for m in (lines or []) if isinstance(m, dict)]


def _age_from_birthdate(dob: str, today: date) -> Optional[int]:
    try:
        born = date.fromisoformat(dob)
    except ValueError:
        return None
    years = today.year - born.year - ((today.month, today.day) < (born.month, born.day))
    return max(years, 0)


def normalize_patient(raw: dict, today: Optional[date] = None) -> dict:
    raw = raw or {}
    today = today or date.today()
    dob = iso_day(_pick(raw, "dateOfBirth", "birthdate", "dob", default="")) or None
    age_raw = _pick(raw, "age", default=None)
    if age_raw is None and dob:
        age = _age_from_birthdate(dob, today)
    elif age_raw is None:
        age = None
    else:
        try:
            age = int(str(age_raw).strip())
        except ValueError:
            raise RecordValidationError(f"Invalid patient: age must be a whole number, got {age_raw!r}")
    images = raw.get("additionalImages") or []
    return _validated(
        Patient,
        {
            "id": _text(raw.get("id")),
            "firstName": _text(raw.get("firstName")),
            "lastName": _text(raw.get("lastName")),
            "age": age,
            "dateOfBirth": dob,
            "gender": _text(_pick(raw, "gender", "sex", default="")),
            "phone": _text(_pick(raw, "phone", "phoneNumber", default="")),
            "address": _text(raw.get("address")),
            "email": _text(raw.get("email")),
            "bloodType": _text(raw.get("bloodType")),
            "allergies": _text(raw.get("allergies")),
            "medicalHistory": _text(raw.get("medicalHistory")),
            "registrationDate": _text(raw.get("registrationDate")) or _now_iso(),
            "visits": int(raw.get("visits") or 1),
            "visitRecords": [r for r in (raw.get("visitRecords") or []) if isinstance(r, dict)],
            "profileImage": _text(raw.get("profileImage")),
            "additionalImages": [i for i in images if i],
        },
    )


def normalize_appointment(raw: dict) -> dict:
    raw = raw or {}
    now = _now_iso()
    try:
        duration = int(_pick(raw, "duration", default=30))
    except (TypeError, ValueError):
        duration = 30
    return _validated(
        Appointment,
        {
            "id": _text(raw.get("id")),
            "patientId": _text(raw.get("patientId")),
            "patientName": _text(_pick(raw, "patientName", "patient", default="")),
            "doctor": _text(_pick(raw, "doctor", "doctorName", default="")),
            "department": _text(raw.get("department")),
            "date": _text(raw.get("date")),
            "time": _text(raw.get("time")),
            "duration": duration,
            "type": _text(_pick(raw, "type", "appointmentType", default="Consultation")),
            "status": _text(raw.get("status")) or "pending",
            "phone": _text(_pick(raw, "phone", "patientPhone", default="")),
            "notes": _text(raw.get("notes")),
            "visitId": _text(raw.get("visitId")),
            "createdAt": _text(raw.get("createdAt")) or now,
            "lastUpdated": _text(raw.get("lastUpdated")) or now,
        },
    )


def normalize_prescription(raw: dict) -> dict:
    raw = raw or {}
    return _validated(
        Prescription,
        {
            "id": _text(raw.get("id")),
            "patientId": _text(raw.get("patientId")),
            "patientName": _text(raw.get("patientName")),
            "doctorName": _text(raw.get("doctorName")),
            "medications": normalize_medications(raw.get("medications")),
            "diagnosis": _text(raw.get("diagnosis")),
            "investigation": _text(raw.get("investigation")),
            "fee": _text(raw.get("fee")),
            "notes": _text(_pick(raw, "notes", "prescriptionNotes", default="")),
            "prescriptionDate": iso_day(_pick(raw, "prescriptionDate", "date", default="")) or date.today().isoformat(),
            "status": _text(raw.get("status")) or "Active",
            "visitId": _text(raw.get("visitId")),
            "createdAt": _text(raw.get("createdAt")) or _now_iso(),
        },
    )


def normalize_visit(raw: dict) -> dict:
    """Fold the embedded (date/doctorName/...) and standalone (visitDate/visitType/...) forms together."""
    raw = raw or {}
    return _validated(
        Visit,
        {
            "id": _text(raw.get("id")),
            "patientId": _text(raw.get("patientId")),
            "patientName": _text(raw.get("patientName")),
            "visitDate": iso_day(_pick(raw, "visitDate", "date", default="")) or date.today().isoformat(),
            "visitTime": _text(raw.get("visitTime")),
            "visitType": _text(raw.get("visitType")),
            "doctorName": _text(_pick(raw, "doctorName", "doctor", default="")),
            "diagnosis": _text(raw.get("diagnosis")),
            "symptoms": _text(raw.get("symptoms")),
            "treatment": _text(raw.get("treatment")),
            "medications": normalize_medications(raw.get("medications")),
            "notes": _text(raw.get("notes")),
            "followUpDate": iso_day(raw.get("followUpDate")),
            "status": _text(raw.get("status")) or "completed",
            "fee": _text(raw.get("fee")),
            "prescriptionId": _text(raw.get("prescriptionId")),
            "createdAt": _text(raw.get("createdAt")),
        },
    )


def full_name(patient: dict) -> str:
    return f"{_text(patient.get('firstName'))} {_text(patient.get('lastName'))}".strip()
