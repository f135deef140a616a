import logging

import rules
from events import ChangeEvent, ChangeWatcher, CollectionView, EventBus, Topic, event_for


def test_publish_delivers_in_subscription_order():
    bus = EventBus()
    seen = []
    bus.subscribe(Topic.PATIENT_ADDED, lambda e: seen.append(("first", e.entity_id)))
    bus.subscribe(Topic.PATIENT_ADDED, lambda e: seen.append(("second", e.entity_id)))
    bus.subscribe(Topic.APPOINTMENT_ADDED, lambda e: seen.append(("other", e.entity_id)))
    bus.publish(event_for(Topic.PATIENT_ADDED, "PAT-1"))
    assert seen == [("first", "PAT-1"), ("second", "PAT-1")]


def test_event_carries_collection_and_entity_id():
    event = event_for(Topic.APPOINTMENT_UPDATED, "APT-9")
    assert event == ChangeEvent(topic=Topic.APPOINTMENT_UPDATED, collection="appointments", entity_id="APT-9")
    assert Topic.APPOINTMENT_UPDATED.value == "appointmentUpdated"


def test_unsubscribe_stops_delivery():
    bus = EventBus()
    seen = []
    unsubscribe = bus.subscribe(Topic.VISIT_ADDED, seen.append)
    unsubscribe()
    bus.publish(event_for(Topic.VISIT_ADDED, "VISIT-1"))
    assert seen == []


def test_batch_holds_events_until_outermost_exit():
    bus = EventBus()
    seen = []
    bus.subscribe(Topic.PATIENT_ADDED, seen.append)
    with bus.batch():
        with bus.batch():
            bus.publish(event_for(Topic.PATIENT_ADDED, "PAT-1"))
        assert seen == []
    assert [e.entity_id for e in seen] == ["PAT-1"]


def test_failing_handler_does_not_block_others(caplog):
    bus = EventBus()
    seen = []

    def broken(_event):
        raise RuntimeError("render failed")

    bus.subscribe(Topic.PRESCRIPTION_ADDED, broken)
    bus.subscribe(Topic.PRESCRIPTION_ADDED, seen.append)
    with caplog.at_level(logging.ERROR, logger="uvicorn.error"):
        bus.publish(event_for(Topic.PRESCRIPTION_ADDED, "PRESC-1"))
    assert len(seen) == 1
    assert "Event handler failed" in caplog.text


def test_every_patient_view_sees_exactly_one_more_after_registration(store, bus, patient_form):
    views = [CollectionView(store, bus, "patients") for _ in range(3)]
    before = [len(v.items) for v in views]
    rules.register_patient(store, bus, patient_form)
    assert [len(v.items) for v in views] == [n + 1 for n in before]
    assert all(v.last_event.topic == Topic.PATIENT_ADDED for v in views)


def test_view_ignores_other_collections(store, bus, patient):
    view = CollectionView(store, bus, "appointments")
    rules.edit_patient(store, bus, patient["id"], {"address": "New address"})
    assert view.reloads == 0
    view.close()


def test_watcher_reports_changes_from_other_handles_only(store, other_tab, bus):
    watcher = ChangeWatcher(store, bus)
    seen = []
    bus.subscribe(Topic.STORAGE_CHANGED, seen.append)

    store.append("patients", {"id": "PAT-own"})
    assert watcher.poll() == []

    other_tab.append("appointments", {"id": "APT-remote"})
    assert watcher.poll() == ["appointments"]
    assert seen == [ChangeEvent(topic=Topic.STORAGE_CHANGED, collection="appointments")]
    assert watcher.poll() == []


def test_view_rereads_after_cross_tab_change(store, other_tab, bus):
    watcher = ChangeWatcher(store, bus)
    view = CollectionView(store, bus, "prescriptions")
    other_tab.append("prescriptions", {"id": "PRESC-b"})
    assert view.items == []
    watcher.poll()
    assert view.items == [{"id": "PRESC-b"}]


def test_watcher_ignores_several_own_writes_between_polls(store, other_tab, bus):
    watcher = ChangeWatcher(store, bus)
    store.append("visits", {"id": "VISIT-1"})
    store.append("visits", {"id": "VISIT-2"})
    store.update("visits", "VISIT-1", {"notes": "x"})
    assert watcher.poll() == []

    store.append("visits", {"id": "VISIT-3"})
    other_tab.append("visits", {"id": "VISIT-b"})
    store.append("visits", {"id": "VISIT-4"})
    assert watcher.poll() == ["visits"]
