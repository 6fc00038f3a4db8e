"""Realtime fan-out buffer for tunnel domain events.

Publishers append ``(seq, name, payload)`` under a condition variable;
stream generators wait for ``seq`` to move past the last value they
delivered. One global sequence keeps every subscriber in publish order.
"""

from collections import deque
import json
import threading

NAMESPACE = "playit"
DEFAULT_BUFFER_SIZE = 500


class EventHub:
    """Bounded, sequence-numbered event ring shared by all subscribers."""

    def __init__(self, buffer_size=DEFAULT_BUFFER_SIZE, namespace=NAMESPACE):
        self.namespace = namespace
        self.cond = threading.Condition()
        self.seq = 0
        self.events = deque(maxlen=max(1, int(buffer_size)))
        self.clients = 0

    def publish(self, event):
        """Publish one domain event and return its sequence number."""
        return self.publish_raw(event.name, event.payload())

    def publish_raw(self, name, payload):
        with self.cond:
            self.seq += 1
            self.events.append((self.seq, name, payload))
            self.cond.notify_all()
            return self.seq

    def current_seq(self):
        with self.cond:
            return self.seq

    def pending_since(self, last_seq):
        """Return ``(new_last_seq, events)`` newer than ``last_seq`` without waiting."""
        with self.cond:
            return self._collect_locked(last_seq)

    def wait_for_events(self, last_seq, timeout):
        """Block up to ``timeout`` seconds for events newer than ``last_seq``."""
        with self.cond:
            self.cond.wait_for(lambda: self.seq > last_seq, timeout=timeout)
            return self._collect_locked(last_seq)

    def _collect_locked(self, last_seq):
        if self.seq <= last_seq:
            return last_seq, []
        if not self.events:
            return self.seq, []
        # Subscribers that fell behind the ring resume from the oldest entry.
        first_available = self.events[0][0]
        if last_seq < first_available - 1:
            last_seq = first_available - 1
        pending = [item for item in self.events if item[0] > last_seq]
        if pending:
            last_seq = pending[-1][0]
        return last_seq, pending

    def add_client(self):
        with self.cond:
            self.clients += 1
            return self.clients

    def remove_client(self):
        with self.cond:
            self.clients = max(0, self.clients - 1)
            return self.clients


def format_sse_frame(seq, name, payload):
    """Render one Server-Sent Events frame."""
    data = json.dumps(payload, separators=(",", ":"), default=str)
    return f"id: {seq}\nevent: {name}\ndata: {data}\n\n"
