import pytest

import rules
from clinic_store import RecordStore
from events import EventBus


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "clinic.db"


@pytest.fixture
def store(db_path):
    return RecordStore(db_path, writer="tab-a")


@pytest.fixture
def other_tab(db_path, store):
    """A second handle on the same file, standing in for another browser tab."""
    return RecordStore(db_path, writer="tab-b")


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def patient_form():
    return {
        "firstName": "Asha",
        "lastName": "Patel",
        "age": "34",
        "gender": "Female",
        "phone": "9876543210",
        "address": "12 Station Road, Rajkot",
        "email": "asha@example.com",
    }


@pytest.fixture
def patient(store, bus, patient_form):
    return rules.register_patient(store, bus, patient_form).record
