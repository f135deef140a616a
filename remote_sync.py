"""
Optional shared snapshot on a remote server.

Only two endpoints exist remotely: GET/POST /api/patients and
GET/POST /api/prescriptions. A pull overwrites the local collection with the
remote copy (no merge); a push sends one newly created prescription. The
local store stays the system of record for everything else.
"""

import logging
from typing import Dict, List, Optional

import requests

import config
from clinic_store import RecordStore
from events import ChangeEvent, EventBus, Topic
from schemas import RecordValidationError, normalize_patient, normalize_prescription

logger = logging.getLogger("uvicorn.error")

SNAPSHOT_COLLECTIONS = {
    "patients": normalize_patient,
    "prescriptions": normalize_prescription,
}


class RemoteClient:
    def __init__(self, base_url: str, timeout: float = 10.0, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def _url(self, collection: str) -> str:
        return f"{self.base_url}/api/{collection}"

    def fetch(self, collection: str) -> List[dict]:
        resp = self.session.get(self._url(collection), timeout=self.timeout)
        resp.raise_for_status()
        data = resp.json()
        if not isinstance(data, list):
            raise ValueError(f"Remote {collection} payload is not a list")
        return data

    def pull_snapshot(self, store: RecordStore, bus: EventBus) -> Dict[str, int]:
        """Overwrite local patients/prescriptions with the remote copy. Returns {collection: count} refreshed."""
        refreshed = {}
        for collection, normalize in SNAPSHOT_COLLECTIONS.items():
            try:
                remote = self.fetch(collection)
            except (requests.RequestException, ValueError) as e:
                logger.warning("Remote pull of %s failed; keeping local copy: %s", collection, e)
                continue
            entities = []
            for raw in remote:
                if not isinstance(raw, dict):
                    continue
                try:
                    entities.append(normalize(raw))
                except RecordValidationError as e:
                    logger.warning("Skipping remote %s entry %s: %s", collection, raw.get("id"), e)
            store.write(collection, entities)
            refreshed[collection] = len(entities)
            bus.publish(ChangeEvent(topic=Topic.STORAGE_CHANGED, collection=collection))
        logger.info("Remote pull complete: %s", refreshed)
        return refreshed

    def push_prescription(self, prescription: dict) -> Optional[dict]:
        try:
            resp = self.session.post(self._url("prescriptions"), json=prescription, timeout=self.timeout)
            resp.raise_for_status()
            return resp.json()
        except (requests.RequestException, ValueError) as e:
            logger.warning("Remote push of prescription %s failed: %s", prescription.get("id"), e)
            return None


def get_remote_client() -> Optional[RemoteClient]:
    """None when CLINIC_REMOTE_URL is unset (remote sync disabled)."""
    if not config.REMOTE_URL:
        return None
    return RemoteClient(config.REMOTE_URL, timeout=config.REMOTE_TIMEOUT)
