"""In-process push feed of committed timeline entries.

The state machine publishes after commit; the websocket route and
``TimelineObserver`` consume. Nothing here writes to the database.

Message shapes::

    {"type": "timeline_entry", "entry": {...}}
    {"type": "shipment", "shipment": {...}}
    {"type": "snapshot", "shipment": {...}, "timeline": [...]}
"""

import threading
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional, Set

from shared.core import get_logger

logger = get_logger(__name__)

Message = Dict[str, Any]


class Subscription:
    def __init__(self, broker: "TimelineBroker", shipment_id: str, callback: Callable[[Message], None]):
        self.broker = broker
        self.shipment_id = shipment_id
        self.callback = callback

    def close(self):
        self.broker.unsubscribe(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


class TimelineBroker:
    def __init__(self):
        self._subscribers: Dict[str, List[Subscription]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, shipment_id: str, callback: Callable[[Message], None]) -> Subscription:
        subscription = Subscription(self, shipment_id, callback)
        with self._lock:
            self._subscribers[shipment_id].append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription):
        with self._lock:
            subscribers = self._subscribers.get(subscription.shipment_id, [])
            if subscription in subscribers:
                subscribers.remove(subscription)
            if not subscribers:
                self._subscribers.pop(subscription.shipment_id, None)

    def subscriber_count(self, shipment_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(shipment_id, []))

    def publish(self, shipment_id: str, message: Message):
        with self._lock:
            subscribers = list(self._subscribers.get(shipment_id, []))
        for subscription in subscribers:
            try:
                subscription.callback(message)
            except Exception as e:
                logger.warning(f"Dropping push for shipment {shipment_id}: {e}")

    def publish_transition(self, shipment: Message, entry: Message):
        shipment_id = shipment["id"]
        self.publish(shipment_id, {"type": "timeline_entry", "entry": entry})
        self.publish(shipment_id, {"type": "shipment", "shipment": shipment})


class TimelineObserver:
    """Client-side view of one shipment's timeline.

    ``connect`` subscribes before fetching, so an entry committed in between
    arrives either in the fetch or as a push; duplicates are dropped by id.
    Snapshots older than the newest version already seen are ignored.
    """

    def __init__(
        self,
        shipment_id: str,
        fetch_timeline: Callable[[], List[Message]],
        fetch_shipment: Callable[[], Message],
    ):
        self.shipment_id = shipment_id
        self._fetch_timeline = fetch_timeline
        self._fetch_shipment = fetch_shipment
        self.entries: List[Message] = []
        self.seen_entry_ids: Set[str] = set()
        self.last_known_version = 0
        self.shipment: Optional[Message] = None
        self._lock = threading.RLock()

    def connect(self, broker: TimelineBroker) -> Subscription:
        subscription = broker.subscribe(self.shipment_id, self.on_message)
        self.resubscribe()
        return subscription

    def resubscribe(self):
        """Full refetch; replaces whatever the local view held."""
        with self._lock:
            timeline = self._fetch_timeline()
            shipment = self._fetch_shipment()
            self.entries = list(timeline)
            self.seen_entry_ids = {entry["id"] for entry in self.entries}
            self.shipment = shipment
            versions = [entry["version"] for entry in self.entries]
            if shipment is not None:
                versions.append(shipment["version"])
            self.last_known_version = max(versions, default=0)

    def on_entry(self, entry: Message) -> bool:
        with self._lock:
            if entry["id"] in self.seen_entry_ids:
                return False
            self.seen_entry_ids.add(entry["id"])
            self.entries.append(entry)
            self.entries.sort(key=lambda e: (e["created_at"], e["version"]))
            self.last_known_version = max(self.last_known_version, entry["version"])
            return True

    def on_snapshot(self, shipment: Message) -> bool:
        with self._lock:
            if shipment["version"] < self.last_known_version:
                return False
            self.shipment = shipment
            self.last_known_version = shipment["version"]
            return True

    def on_message(self, message: Message):
        kind = message.get("type")
        if kind == "timeline_entry":
            self.on_entry(message["entry"])
        elif kind == "shipment":
            self.on_snapshot(message["shipment"])
        elif kind == "snapshot":
            with self._lock:
                for entry in message.get("timeline", []):
                    self.on_entry(entry)
                self.on_snapshot(message["shipment"])

    @property
    def status(self) -> Optional[str]:
        return self.shipment["status"] if self.shipment else None


_broker = TimelineBroker()


def get_broker() -> TimelineBroker:
    return _broker
