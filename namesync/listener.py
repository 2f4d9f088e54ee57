"""
LISTEN/NOTIFY consumer.

    DISCONNECTED -> CONNECTING -> LISTENING -> PROCESSING -> LISTENING
    LISTENING -> RECONNECTING -> CONNECTING      (connection lost, backoff)
    CONNECTING -> FATAL                          (startup never succeeded)

NOTIFY is not durable: anything sent while we are disconnected is gone. After
every reconnect a reconcile-index job is queued to close that gap.
"""
from __future__ import annotations
import logging
import select
import threading
from collections import deque
from enum import Enum
from typing import Deque, List, Optional, Protocol

import orjson
import psycopg2
import psycopg2.extensions
from pydantic import ValidationError
from sqlalchemy.engine import make_url

from namesync.backoff import backoff_delay
from namesync.changes import ChangeProcessor
from namesync.config import Settings
from namesync.errors import ConnectionLost, ListenerFatal, PermanentError, TransientError
from namesync.jobs import names
from namesync.jobs.queue import JobQueue
from namesync.schemas import ChangeEvent

log = logging.getLogger(__name__)


class ListenerState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    LISTENING = "listening"
    PROCESSING = "processing"
    RECONNECTING = "reconnecting"
    FATAL = "fatal"


class NotificationSource(Protocol):
    def connect(self) -> None: ...

    def poll(self, timeout: float) -> List[str]: ...

    def close(self) -> None: ...


def libpq_dsn(database_url: str) -> str:
    return make_url(database_url).set(drivername="postgresql").render_as_string(hide_password=False)


class PgNotificationSource:
    def __init__(self, dsn: str, channel: str):
        self.dsn = dsn
        self.channel = channel
        self.conn = None

    def connect(self) -> None:
        self.close()
        try:
            conn = psycopg2.connect(self.dsn)
            conn.set_isolation_level(psycopg2.extensions.ISOLATION_LEVEL_AUTOCOMMIT)
            with conn.cursor() as cur:
                cur.execute(f'LISTEN "{self.channel}"')
        except psycopg2.Error as e:
            raise ConnectionLost(str(e).strip()) from e
        self.conn = conn

    def poll(self, timeout: float) -> List[str]:
        if self.conn is None or self.conn.closed:
            raise ConnectionLost("not connected")
        try:
            if select.select([self.conn], [], [], timeout) == ([], [], []):
                return []
            self.conn.poll()
        except (psycopg2.Error, OSError, ValueError) as e:
            raise ConnectionLost(str(e).strip()) from e
        payloads = [n.payload for n in self.conn.notifies]
        self.conn.notifies.clear()
        return payloads

    def close(self) -> None:
        if self.conn is not None and not self.conn.closed:
            try:
                self.conn.close()
            except psycopg2.Error:
                log.debug("error closing listen connection", exc_info=True)
        self.conn = None


class ChangeListener:
    def __init__(self, source: NotificationSource, processor: ChangeProcessor, queue: Optional[JobQueue],
                 settings: Settings):
        self.source = source
        self.processor = processor
        self.queue = queue
        self.s = settings
        self.state = ListenerState.DISCONNECTED
        self.pending: Deque[str] = deque()
        self.processed = 0
        self.skipped = 0
        self.dropped = 0
        self.reconnects = 0
        self._failures = 0
        self._gap = False

    def _set_state(self, state: ListenerState) -> None:
        if state != self.state:
            log.info("listener %s -> %s", self.state.value, state.value, extra={"state": state.value})
            self.state = state

    def _delay(self, attempt: int) -> float:
        return backoff_delay(attempt, self.s.LISTENER_BACKOFF_BASE, self.s.LISTENER_BACKOFF_MAX)

    def connect(self, stop: threading.Event, startup: bool) -> bool:
        attempt = 0
        while not stop.is_set():
            self._set_state(ListenerState.CONNECTING)
            try:
                self.source.connect()
            except TransientError as e:
                attempt += 1
                if startup and attempt >= self.s.LISTENER_STARTUP_ATTEMPTS:
                    self._set_state(ListenerState.FATAL)
                    raise ListenerFatal(f"could not listen after {attempt} attempts: {e}") from e
                delay = self._delay(attempt - 1)
                log.warning("listen connection failed (attempt %d): %s; retrying in %.1fs", attempt, e, delay)
                self._set_state(ListenerState.RECONNECTING)
                stop.wait(delay)
                continue
            self._set_state(ListenerState.LISTENING)
            log.info("listening on channel %s", self.s.NOTIFY_CHANNEL)
            return True
        return False

    def request_reconcile(self, reason: str) -> None:
        if self.queue is None:
            return
        try:
            job_id = self.queue.enqueue(names.RECONCILE_INDEX, {"mode": "full"}, singleton_key=names.RECONCILE_INDEX)
        except Exception:
            log.exception("could not queue reconcile after %s", reason)
            return
        self._gap = False
        log.info("reconcile requested after %s (job %s)", reason, job_id or "already queued")

    def offer(self, payload: str) -> bool:
        if len(self.pending) >= self.s.LISTENER_MAX_PENDING:
            self.dropped += 1
            self._gap = True
            log.warning("pending buffer full (%d), dropping change event", len(self.pending))
            return False
        self.pending.append(payload)
        return True

    def handle(self, payload: str) -> None:
        """Process one raw payload. TransientError propagates, everything else is logged and skipped."""
        try:
            event = ChangeEvent.model_validate(orjson.loads(payload))
        except (orjson.JSONDecodeError, ValidationError) as e:
            self.skipped += 1
            log.warning("malformed change payload skipped: %s", str(e).splitlines()[0])
            return
        extra = {"table": event.table, "operation": event.operation.value}
        try:
            self.processor.process(event)
        except TransientError:
            raise
        except PermanentError as e:
            self.skipped += 1
            log.warning("change on %s %s skipped: %s", event.table, event.row_id, e, extra=extra)
            return
        except Exception:
            self.skipped += 1
            log.exception("change on %s %s failed", event.table, event.row_id, extra=extra)
            return
        self.processed += 1

    def drain(self, stop: threading.Event) -> None:
        """Work through the buffer in order. A transient failure keeps the event at the head and backs off."""
        while self.pending and not stop.is_set():
            self._set_state(ListenerState.PROCESSING)
            try:
                self.handle(self.pending[0])
            except TransientError as e:
                delay = self._delay(self._failures)
                self._failures += 1
                log.warning("change processing paused (%s); retrying in %.1fs with %d pending",
                            e, delay, len(self.pending))
                self._set_state(ListenerState.LISTENING)
                stop.wait(delay)
                return
            self.pending.popleft()
            self._failures = 0
        self._set_state(ListenerState.LISTENING)
        if self._gap and not self.pending:
            self.request_reconcile("dropped events")

    def run(self, stop: Optional[threading.Event] = None) -> None:
        stop = stop or threading.Event()
        try:
            if not self.connect(stop, startup=True):
                return
            while not stop.is_set():
                try:
                    for payload in self.source.poll(self.s.LISTENER_POLL_SECONDS):
                        self.offer(payload)
                except ConnectionLost as e:
                    log.warning("listen connection lost: %s", e)
                    self._set_state(ListenerState.RECONNECTING)
                    self.source.close()
                    stop.wait(self._delay(0))
                    if not self.connect(stop, startup=False):
                        break
                    self.reconnects += 1
                    self._gap = True
                    self.request_reconcile("reconnect")
                    continue
                self.drain(stop)
        finally:
            self.source.close()
            if self.state != ListenerState.FATAL:
                self._set_state(ListenerState.DISCONNECTED)
