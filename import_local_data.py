"""
Import a browser localStorage export into the record store.

Expects one `<collection>.json` file per key (patients, appointments,
prescriptions, visits) in the export directory. Entries are normalized to the
canonical shapes; entries that fail validation are skipped and reported.

    python import_local_data.py path/to/export [--db data/clinic.db] [--raw]
"""

import argparse
import json
from datetime import datetime
from pathlib import Path

import config
from clinic_store import configure_db
from schemas import (
    COLLECTIONS,
    RecordValidationError,
    normalize_appointment,
    normalize_patient,
    normalize_prescription,
    normalize_visit,
)

NORMALIZERS = {
    "patients": normalize_patient,
    "appointments": normalize_appointment,
    "prescriptions": normalize_prescription,
    "visits": normalize_visit,
}


def load_json(path: Path, default):
    if not path.exists():
        return default
    try:
        return json.loads(path.read_text(encoding="utf-8") or json.dumps(default))
    except ValueError:
        return default


def import_collection(store, export_dir: Path, collection: str, raw: bool = False) -> dict:
    path = export_dir / f"{collection}.json"
    if not path.exists():
        return {"imported": 0, "skipped": 0, "missing": True}
    if raw:
        # keep the text byte-for-byte; corrupt payloads get reset on first read
        store.set_raw_payload(collection, path.read_text(encoding="utf-8"))
        return {"imported": len(store.read(collection)), "skipped": 0, "missing": False}
    payload = load_json(path, [])
    normalize = NORMALIZERS[collection]
    entities, skipped = [], 0
    for entry in payload if isinstance(payload, list) else []:
        if not isinstance(entry, dict):
            skipped += 1
            continue
        try:
            entities.append(normalize(entry))
        except RecordValidationError as e:
            skipped += 1
            print(f"  [skip] {collection} {entry.get('id')}: {e}")
    store.write(collection, entities)
    return {"imported": len(entities), "skipped": skipped, "missing": False}


def main(argv=None):
    parser = argparse.ArgumentParser(description="Import a localStorage export into the ClinicDesk store.")
    parser.add_argument("export_dir", type=Path)
    parser.add_argument("--db", type=Path, default=config.DB_PATH)
    parser.add_argument("--raw", action="store_true", help="store payloads verbatim without normalizing")
    args = parser.parse_args(argv)

    store = configure_db(args.db)
    results = {}
    for collection in COLLECTIONS:
        results[collection] = import_collection(store, args.export_dir, collection, raw=args.raw)
        r = results[collection]
        if r["missing"]:
            print(f"  - {collection}: no export file, left unchanged")
        else:
            print(f"  - {collection}: imported ({r['imported']} items, {r['skipped']} skipped)")
    print("[done] import complete at", datetime.now().isoformat())
    return results


if __name__ == "__main__":
    main()
