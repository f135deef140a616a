import json

from clinic_store import RecordStore
from import_local_data import main


def _export(tmp_path, **collections):
    export_dir = tmp_path / "export"
    export_dir.mkdir()
    for name, payload in collections.items():
        text = payload if isinstance(payload, str) else json.dumps(payload, ensure_ascii=False)
        (export_dir / f"{name}.json").write_text(text, encoding="utf-8")
    return export_dir


def test_import_normalizes_and_skips_invalid(tmp_path, capsys):
    export_dir = _export(
        tmp_path,
        patients=[
            {"id": "1718000000000", "firstName": "Hetal", "lastName": "Vora", "age": "29", "gender": "Female"},
            {"id": "1718000000001", "firstName": "No", "lastName": "Age"},
        ],
        appointments=[{"id": "APT-1", "patient": "Hetal Vora", "doctor": "Dr. Dhara Gosai", "date": "2024-05-01", "time": "09:30"}],
    )
    db = tmp_path / "clinic.db"

    results = main([str(export_dir), "--db", str(db)])

    assert results["patients"] == {"imported": 1, "skipped": 1, "missing": False}
    assert results["appointments"]["imported"] == 1
    assert results["visits"]["missing"] is True
    store = RecordStore(db)
    assert store.read("patients")[0]["age"] == 29
    assert store.read("appointments")[0]["patientName"] == "Hetal Vora"
    out = capsys.readouterr().out
    assert "[skip] patients 1718000000001" in out
    assert "visits: no export file" in out


def test_missing_files_leave_existing_data(tmp_path):
    db = tmp_path / "clinic.db"
    RecordStore(db).write("visits", [{"id": "VISIT-keep"}])
    export_dir = _export(tmp_path, prescriptions=[])
    main([str(export_dir), "--db", str(db)])
    assert RecordStore(db).read("visits") == [{"id": "VISIT-keep"}]


def test_raw_import_of_corrupt_payload_resets(tmp_path):
    db = tmp_path / "clinic.db"
    export_dir = _export(tmp_path, prescriptions="{not json", visits='[{"id": "VISIT-1", "anything": true}]')
    results = main([str(export_dir), "--db", str(db), "--raw"])
    assert results["prescriptions"]["imported"] == 0
    assert results["visits"]["imported"] == 1
    store = RecordStore(db)
    assert store.raw_payload("prescriptions") == "[]"
    assert store.read("visits") == [{"id": "VISIT-1", "anything": True}]
