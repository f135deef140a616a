"""
File: events.py
Author notes: Change notification between writers and read-views. Same-process
delivery is synchronous and in subscription order; cross-process changes are
picked up by ChangeWatcher.poll() comparing the store's per-key versions, so
they arrive on the next poll rather than immediately.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional

logger = logging.getLogger("uvicorn.error")


class Topic(str, Enum):
    PATIENT_ADDED = "patientAdded"
    PATIENT_UPDATED = "patientUpdated"
    PATIENT_DELETED = "patientDeleted"
    APPOINTMENT_ADDED = "appointmentAdded"
    APPOINTMENT_UPDATED = "appointmentUpdated"
    PRESCRIPTION_ADDED = "prescriptionAdded"
    PRESCRIPTION_UPDATED = "prescriptionUpdated"
    VISIT_ADDED = "visitAdded"
    STORAGE_CHANGED = "storageChanged"


TOPIC_COLLECTION = {
    Topic.PATIENT_ADDED: "patients",
    Topic.PATIENT_UPDATED: "patients",
    Topic.PATIENT_DELETED: "patients",
    Topic.APPOINTMENT_ADDED: "appointments",
    Topic.APPOINTMENT_UPDATED: "appointments",
    Topic.PRESCRIPTION_ADDED: "prescriptions",
    Topic.PRESCRIPTION_UPDATED: "prescriptions",
    Topic.VISIT_ADDED: "visits",
}


@dataclass(frozen=True)
class ChangeEvent:
    topic: Topic
    collection: str
    entity_id: Optional[str] = None


def event_for(topic: Topic, entity_id: Optional[str] = None) -> ChangeEvent:
    return ChangeEvent(topic=topic, collection=TOPIC_COLLECTION[topic], entity_id=entity_id)


Handler = Callable[[ChangeEvent], None]


class EventBus:
    def __init__(self):
        self._subscribers: Dict[Topic, List[Handler]] = {}
        self._pending: List[ChangeEvent] = []
        self._depth = 0

    def subscribe(self, topic: Topic, handler: Handler) -> Callable[[], None]:
        """Register a handler; returns a callable that unsubscribes it."""
        self._subscribers.setdefault(topic, []).append(handler)

        def unsubscribe():
            handlers = self._subscribers.get(topic, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def publish(self, event: ChangeEvent):
        if self._depth:
            self._pending.append(event)
            return
        self._deliver(event)

    def _deliver(self, event: ChangeEvent):
        for handler in list(self._subscribers.get(event.topic, [])):
            try:
                handler(event)
            except Exception:
                # one broken view must not starve the others
                logger.exception("Event handler failed for %s", event.topic.value)

    @contextmanager
    def batch(self):
        """Hold deliveries until the outermost batch exits, so views see the whole multi-entity save."""
        self._depth += 1
        try:
            yield self
        finally:
            self._depth -= 1
            if not self._depth:
                pending, self._pending = self._pending, []
                for event in pending:
                    self._deliver(event)


class ChangeWatcher:
    """Turns version bumps written by *other* store handles into STORAGE_CHANGED events."""

    def __init__(self, store, bus: EventBus):
        self.store = store
        self.bus = bus
        self._seen = {c: v for c, (v, _w) in store.version_rows().items()}
        self._own_seen = {c: store.own_writes(c) for c in TOPIC_COLLECTION.values()}

    def poll(self) -> List[str]:
        changed = []
        for collection, (version, _writer) in sorted(self.store.version_rows().items()):
            previous = self._seen.get(collection, 0)
            own = self.store.own_writes(collection)
            own_delta = own - self._own_seen.get(collection, 0)
            self._own_seen[collection] = own
            if version == previous:
                continue
            self._seen[collection] = version
            # every bump beyond this handle's own commits came from another writer
            if version - previous > own_delta:
                changed.append(collection)
        for collection in changed:
            self.bus.publish(ChangeEvent(topic=Topic.STORAGE_CHANGED, collection=collection))
        return changed


class CollectionView:
    """Cached read of one collection, invalidated by bus events (what a list screen holds)."""

    def __init__(self, store, bus: EventBus, collection: str, topics: Iterable[Topic] = ()):
        self.store = store
        self.collection = collection
        self.reloads = 0
        self.last_event: Optional[ChangeEvent] = None
        self._items = store.read(collection)
        topics = set(topics) or {t for t, c in TOPIC_COLLECTION.items() if c == collection}
        topics.add(Topic.STORAGE_CHANGED)
        self._unsubscribers = [bus.subscribe(t, self._on_event) for t in topics]

    def _on_event(self, event: ChangeEvent):
        if event.collection != self.collection:
            return
        self.last_event = event
        self.reload()

    def reload(self):
        self._items = self.store.read(self.collection)
        self.reloads += 1

    @property
    def items(self) -> List[dict]:
        return list(self._items)

    def close(self):
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
