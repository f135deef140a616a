from datetime import date

import pytest

from schemas import (
    RecordValidationError,
    iso_day,
    normalize_appointment,
    normalize_medication,
    normalize_patient,
    normalize_prescription,
    normalize_visit,
)


def test_medication_from_dosage_shape():
    med = normalize_medication(
        {"name": "Amoxicillin", "dosage": "500mg", "frequency": ["morning", "night"], "duration": "5 days", "instructions": "after food"}
    )
    assert med["dose"] == "500mg"
    assert med["frequency"] == ["morning", "night"]
    assert med["qty"] == ""


def test_medication_from_dose_qty_shape():
    med = normalize_medication({"id": "MED-1", "name": "Cetirizine", "dose": "રાત્રે જમીને", "qty": 10})
    assert med == {
        "id": "MED-1",
        "name": "Cetirizine",
        "dose": "રાત્રે જમીને",
        "qty": "10",
        "frequency": [],
        "duration": "",
        "instructions": "",
    }


def test_medication_dose_falls_back_to_frequency():
    assert normalize_medication({"name": "ORS", "frequency": "as needed"})["dose"] == "as needed"


def test_medication_needs_a_name():
    with pytest.raises(RecordValidationError):
        normalize_medication({"dose": "1 tab"})


def _patient(**overrides):
    base = {"id": "PAT-1", "firstName": "Meena", "lastName": "Shah", "gender": "Female", "phone": "99", "address": "Rajkot"}
    return {**base, **overrides}


def test_patient_age_derived_from_birthdate():
    p = normalize_patient(_patient(dateOfBirth="2000-06-15"), today=date(2024, 6, 14))
    assert p["age"] == 23
    assert p["dateOfBirth"] == "2000-06-15"


def test_patient_legacy_string_age_and_sex_key():
    p = normalize_patient(_patient(age="42", gender=None, sex="Male"))
    assert p["age"] == 42
    assert p["gender"] == "Male"
    assert p["visits"] == 1


@pytest.mark.parametrize(
    "overrides",
    [
        {},
        {"age": "abc"},
        {"age": "151"},
        {"age": "30", "profileImage": "data:a", "additionalImages": ["b", "c", "d", "e"]},
    ],
)
def test_patient_rejections(overrides):
    with pytest.raises(RecordValidationError):
        normalize_patient(_patient(**overrides))


def test_visit_merges_embedded_form():
    v = normalize_visit(
        {"id": "VISIT-1", "date": "2024-02-01", "doctorName": "Dr. Dhara Gosai", "medications": [{"name": "Clove oil", "dose": "x", "qty": "1"}]}
    )
    assert v["visitDate"] == "2024-02-01"
    assert v["medications"][0]["name"] == "Clove oil"
    assert v["followUpDate"] == ""


def test_visit_keeps_standalone_fields():
    v = normalize_visit(
        {"id": "VISIT-2", "visitDate": "2024-02-02", "visitTime": "10:15", "visitType": "Consultation", "symptoms": "fever", "status": "in-progress"}
    )
    assert (v["visitTime"], v["visitType"], v["symptoms"], v["status"]) == ("10:15", "Consultation", "fever", "in-progress")


def test_appointment_legacy_patient_string():
    a = normalize_appointment({"id": "APT-1", "patient": "Meena Shah", "doctor": "Dr. Dhara Gosai", "date": "2024-05-01", "time": "09:30"})
    assert a["patientName"] == "Meena Shah"
    assert a["status"] == "pending"
    assert a["duration"] == 30


@pytest.mark.parametrize("overrides", [{"time": "9:30am"}, {"date": "tomorrow"}, {"status": "finished"}])
def test_appointment_rejections(overrides):
    raw = {"id": "APT-1", "patientName": "M", "doctor": "D", "date": "2024-05-01", "time": "09:30", **overrides}
    with pytest.raises(RecordValidationError):
        normalize_appointment(raw)


def test_prescription_timestamp_becomes_calendar_date():
    p = normalize_prescription(
        {"id": "PRESC-1", "patientId": "PAT-1", "doctorName": "Dr. Tansukh Gosai", "date": "2024-07-09T08:30:00.000Z"}
    )
    assert p["prescriptionDate"] == "2024-07-09"
    assert p["status"] == "Active"


def test_iso_day_variants():
    assert iso_day("2024-07-09T08:30:00Z") == "2024-07-09"
    assert iso_day("2024-07-09 08:30") == "2024-07-09"
    assert iso_day(date(2024, 1, 2)) == "2024-01-02"
    assert iso_day("7/9/2024, 8:30:00 AM") == ""
    assert iso_day(None) == ""
