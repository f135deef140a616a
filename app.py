"""
File: app.py
Author notes: HTTP surface for the front desk. Handlers stay thin: parse the
payload, call rules/queries, return JSON. Every request first polls the
ChangeWatcher so writes made by another process sharing the store file are
announced on this process's bus before the handler reads.
"""

import logging
from contextlib import asynccontextmanager
from datetime import date
from pathlib import Path
from typing import Optional

from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

import config
import queries
import rules
from clinic_store import StoreUnavailableError, configure_db
from events import ChangeWatcher, EventBus
from remote_sync import get_remote_client
from rules import RecordNotFoundError
from schemas import COLLECTIONS, full_name

logger = logging.getLogger("uvicorn.error")

# Process state
state = {"store": None, "bus": EventBus(), "watcher": None, "remote": None}


def init_app(db_path: Optional[Path] = None):
    """Open the record store (explicit init) and wire the watcher/remote client."""
    store = configure_db(Path(db_path or config.DB_PATH))
    state["store"] = store
    state["watcher"] = ChangeWatcher(store, state["bus"])
    state["remote"] = get_remote_client()
    logger.info("ClinicDesk store ready at %s", store.path)
    return store


@asynccontextmanager
async def lifespan(_app: FastAPI):
    if state["store"] is None:
        init_app()
    yield


app = FastAPI(title="ClinicDesk", lifespan=lifespan)


@app.exception_handler(RecordNotFoundError)
async def _not_found(_request: Request, exc: RecordNotFoundError):
    return JSONResponse({"error": str(exc)}, status_code=status.HTTP_404_NOT_FOUND)


@app.exception_handler(ValueError)
async def _bad_request(_request: Request, exc: ValueError):
    return JSONResponse({"error": str(exc)}, status_code=status.HTTP_400_BAD_REQUEST)


@app.exception_handler(StoreUnavailableError)
async def _store_unavailable(_request: Request, exc: StoreUnavailableError):
    return JSONResponse({"error": f"Storage unavailable: {exc}"}, status_code=status.HTTP_503_SERVICE_UNAVAILABLE)


def current():
    """Request dependency: the store, after announcing any cross-process changes."""
    if state["store"] is None:
        init_app()
    state["watcher"].poll()
    return state["store"]


async def read_payload(request: Request) -> dict:
    try:
        payload = await request.json()
    except ValueError:
        form = await request.form()
        payload = dict(form)
    if not isinstance(payload, dict):
        raise ValueError("Payload must be a JSON object.")
    return payload


# --- patients ---

@app.get("/api/patients")
async def list_patients(q: str = "", gender: str = "all", store=Depends(current)):
    patients = queries.search_patients(store.read("patients"), q)
    return queries.sort_by_registration(queries.filter_equals(patients, gender=gender))


@app.post("/api/patients", status_code=status.HTTP_201_CREATED)
async def register_patient(request: Request, store=Depends(current)):
    payload = await read_payload(request)
    return rules.register_patient(store, state["bus"], payload).as_dict()


@app.get("/api/patients/{patient_id}")
async def get_patient(patient_id: str, store=Depends(current)):
    patient = store.find("patients", patient_id)
    if patient is None:
        raise RecordNotFoundError(f"Patient not found: {patient_id}")
    return patient


@app.put("/api/patients/{patient_id}")
async def edit_patient(patient_id: str, request: Request, store=Depends(current)):
    payload = await read_payload(request)
    return rules.edit_patient(store, state["bus"], patient_id, payload).as_dict()


@app.delete("/api/patients/{patient_id}")
async def delete_patient(patient_id: str, store=Depends(current)):
    removed = rules.delete_patient(store, state["bus"], patient_id)
    return {"success": True, "prescriptionsRemoved": removed}


@app.post("/api/patients/{patient_id}/visits", status_code=status.HTTP_201_CREATED)
async def record_visit(patient_id: str, request: Request, store=Depends(current)):
    payload = await read_payload(request)
    return rules.record_visit(store, state["bus"], patient_id, payload).as_dict()


@app.get("/api/patients/{patient_id}/visits")
async def patient_visits(patient_id: str, store=Depends(current)):
    patient = await get_patient(patient_id, store)
    return queries.visits_for_patient(store.read("visits"), patient)


@app.get("/api/patients/{patient_id}/medications")
async def patient_medications(patient_id: str, store=Depends(current)):
    patient = await get_patient(patient_id, store)
    prescriptions = store.read("prescriptions")
    return {
        "patient": full_name(patient),
        "prescriptions": queries.prescriptions_for_patient(prescriptions, patient_id),
        "medications": queries.medication_history(prescriptions, patient_id),
    }


# --- appointments ---

@app.get("/api/appointments")
async def list_appointments(
    day: Optional[str] = None,
    status_filter: str = Query("all", alias="status"),
    view: str = "day",
    q: str = "",
    department: str = "all",
    store=Depends(current),
):
    items = queries.search(store.read("appointments"), q, queries.APPOINTMENT_SEARCH_FIELDS)
    items = queries.filter_equals(items, department=department)
    return queries.appointments_view(items, day=day or date.today(), status=status_filter, view=view)


@app.post("/api/appointments", status_code=status.HTTP_201_CREATED)
async def book_appointment(request: Request, store=Depends(current)):
    payload = await read_payload(request)
    return rules.book_appointment(store, state["bus"], payload).as_dict()


@app.post("/api/appointments/{appointment_id}/status")
async def appointment_status(appointment_id: str, request: Request, store=Depends(current)):
    payload = await read_payload(request)
    return rules.set_appointment_status(store, state["bus"], appointment_id, str(payload.get("status") or ""))


@app.post("/api/appointments/{appointment_id}/done")
async def appointment_done(appointment_id: str, store=Depends(current)):
    return rules.mark_done(store, state["bus"], appointment_id)


# --- prescriptions ---

@app.get("/api/prescriptions")
async def list_prescriptions(
    patient_id: str = "",
    q: str = "",
    status_filter: str = Query("all", alias="status"),
    store=Depends(current),
):
    items = store.read("prescriptions")
    if patient_id:
        items = queries.prescriptions_for_patient(items, patient_id)
    items = queries.search(items, q, queries.PRESCRIPTION_SEARCH_FIELDS)
    return queries.filter_equals(items, status=status_filter)


@app.post("/api/prescriptions", status_code=status.HTTP_201_CREATED)
async def create_prescription(request: Request, store=Depends(current)):
    payload = await read_payload(request)
    outcome = rules.create_prescription(store, state["bus"], payload)
    remote = state["remote"]
    if remote is not None and await run_in_threadpool(remote.push_prescription, outcome.record) is None:
        outcome.warnings.append("prescription not pushed to remote snapshot")
    return outcome.as_dict()


@app.post("/api/prescriptions/{prescription_id}/status")
async def prescription_status(prescription_id: str, request: Request, store=Depends(current)):
    payload = await read_payload(request)
    return rules.set_prescription_status(store, state["bus"], prescription_id, str(payload.get("status") or ""))


# --- visits, dashboard, sync ---

@app.get("/api/visits")
async def list_visits(
    q: str = "",
    day: Optional[str] = None,
    status_filter: str = Query("all", alias="status"),
    store=Depends(current),
):
    items = queries.search(store.read("visits"), q, queries.VISIT_SEARCH_FIELDS)
    if day:
        items = queries.filter_by_day(items, day, field="visitDate")
    return queries.filter_equals(items, status=status_filter)


@app.get("/api/dashboard")
async def dashboard(store=Depends(current)):
    return queries.dashboard_counts(store.snapshot())


@app.get("/api/versions")
async def versions(store=Depends(current)):
    return store.versions()


@app.post("/api/sync/pull")
async def sync_pull(store=Depends(current)):
    remote = state["remote"]
    if remote is None:
        return JSONResponse({"error": "Remote sync is not configured"}, status_code=status.HTTP_400_BAD_REQUEST)
    return {"refreshed": remote.pull_snapshot(store, state["bus"])}


@app.get("/api/data/{collection}")
async def raw_collection(collection: str, store=Depends(current)):
    if collection not in COLLECTIONS:
        raise ValueError(f"Invalid collection: {collection}")
    return store.read(collection)


if __name__ == "__main__":
    import uvicorn

    print("=" * 50)
    print("ClinicDesk Starting (FastAPI)...")
    print("=" * 50)
    print(f"Access via: http://{config.HOST}:{config.PORT}")
    print("=" * 50)

    uvicorn.run("app:app", host=config.HOST, port=config.PORT, reload=False)
