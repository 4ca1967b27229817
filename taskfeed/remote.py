from __future__ import annotations

import copy
import json
import logging
import threading
from typing import Any, Callable, Optional

import requests

from taskfeed.errors import RemoteError
from taskfeed.models import RemoteConfig


logger = logging.getLogger(__name__)

ChangeCallback = Callable[[Optional[dict[str, Any]]], None]
ErrorCallback = Callable[[Exception], None]


class Subscription:
    def close(self) -> None:
        raise NotImplementedError


class RemoteRecord:
    """One shared JSON document that every replica reads and writes.

    ``write`` merges at the top level: fields present in the payload replace
    the stored ones, other stored fields are kept. ``subscribe`` delivers the
    current value first (None when the record does not exist) and then every
    later change.
    """

    def read(self) -> dict[str, Any] | None:
        raise NotImplementedError

    def write(self, payload: dict[str, Any]) -> None:
        raise NotImplementedError

    def subscribe(self, on_change: ChangeCallback, on_error: ErrorCallback) -> Subscription:
        raise NotImplementedError


class _MemorySubscription(Subscription):
    def __init__(self, record: "MemoryRemoteRecord", on_change: ChangeCallback) -> None:
        self._record = record
        self.on_change = on_change

    def close(self) -> None:
        self._record._unsubscribe(self)


class MemoryRemoteRecord(RemoteRecord):
    """In-process record. Notifications are synchronous unless ``auto_notify`` is off."""

    def __init__(self, initial: dict[str, Any] | None = None, *, auto_notify: bool = True) -> None:
        self._data = copy.deepcopy(initial) if initial is not None else None
        self._lock = threading.RLock()
        self._subscribers: list[_MemorySubscription] = []
        self._queued: list[dict[str, Any] | None] = []
        self.auto_notify = auto_notify
        self.writes: list[dict[str, Any]] = []

    def read(self) -> dict[str, Any] | None:
        with self._lock:
            return copy.deepcopy(self._data)

    def write(self, payload: dict[str, Any]) -> None:
        with self._lock:
            merged = dict(self._data or {})
            merged.update(copy.deepcopy(payload))
            self._data = merged
            self.writes.append(copy.deepcopy(payload))
        self._notify(self.read())

    def replace_from_peer(self, payload: dict[str, Any] | None) -> None:
        """Store a value as if another replica wrote it."""
        with self._lock:
            self._data = copy.deepcopy(payload)
        self._notify(self.read())

    def subscribe(self, on_change: ChangeCallback, on_error: ErrorCallback) -> Subscription:
        subscription = _MemorySubscription(self, on_change)
        with self._lock:
            self._subscribers.append(subscription)
        on_change(self.read())
        return subscription

    def flush(self) -> None:
        with self._lock:
            queued = list(self._queued)
            self._queued.clear()
        for value in queued:
            self._deliver(value)

    def _notify(self, value: dict[str, Any] | None) -> None:
        if not self.auto_notify:
            with self._lock:
                self._queued.append(value)
            return
        self._deliver(value)

    def _deliver(self, value: dict[str, Any] | None) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for subscription in subscribers:
            subscription.on_change(copy.deepcopy(value))

    def _unsubscribe(self, subscription: _MemorySubscription) -> None:
        with self._lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)


class _StreamSubscription(Subscription):
    def __init__(
        self,
        record: "HTTPRemoteRecord",
        on_change: ChangeCallback,
        on_error: ErrorCallback,
    ) -> None:
        self._record = record
        self._on_change = on_change
        self._on_error = on_error
        self._stop_event = threading.Event()
        self._response: requests.Response | None = None
        self._thread = threading.Thread(target=self._loop, name="taskfeed-remote-stream", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def close(self) -> None:
        self._stop_event.set()
        response = self._response
        if response is not None:
            response.close()
        if self._thread.is_alive() and threading.current_thread() is not self._thread:
            self._thread.join(timeout=5)

    def _loop(self) -> None:
        try:
            with self._record.open_stream() as response:
                self._response = response
                event_name = ""
                for line in response.iter_lines(decode_unicode=True):
                    if self._stop_event.is_set():
                        return
                    if not line:
                        event_name = ""
                        continue
                    if line.startswith("event:"):
                        event_name = line[len("event:") :].strip()
                    elif line.startswith("data:"):
                        if not self.dispatch(event_name, line[len("data:") :].strip()):
                            return
        except (requests.RequestException, RemoteError) as exc:
            if not self._stop_event.is_set():
                self._on_error(exc if isinstance(exc, RemoteError) else RemoteError(str(exc)))

    def dispatch(self, event_name: str, data: str) -> bool:
        """Handle one stream event. Returns False when the stream must end."""
        if event_name in {"put", "patch"}:
            try:
                self._on_change(self._record.read())
            except RemoteError as exc:
                self._on_error(exc)
            return True
        if event_name in {"cancel", "auth_revoked"}:
            self._on_error(RemoteError(f"Remote stream closed by server: {event_name} {data}".strip()))
            return False
        # keep-alive and unknown events carry nothing to apply
        return True


class HTTPRemoteRecord(RemoteRecord):
    """JSON document on a REST realtime database (``<base_url>/<record_path>.json``)."""

    def __init__(self, config: RemoteConfig, session: requests.Session | None = None) -> None:
        self.config = config
        self._session = session or requests.Session()

    @property
    def record_url(self) -> str:
        return f"{self.config.base_url.rstrip('/')}/{self.config.record_path.strip('/')}.json"

    def read(self) -> dict[str, Any] | None:
        try:
            response = self._session.get(self.record_url, timeout=self.config.timeout_seconds)
            response.raise_for_status()
            payload = response.json()
        except requests.RequestException as exc:
            raise RemoteError(f"Remote read failed: {exc}") from exc
        except ValueError as exc:
            raise RemoteError("Remote record is not valid JSON.") from exc
        if payload is None:
            return None
        if not isinstance(payload, dict):
            raise RemoteError("Remote record root must be an object.")
        return payload

    def write(self, payload: dict[str, Any]) -> None:
        try:
            response = self._session.patch(
                self.record_url,
                data=json.dumps(payload, ensure_ascii=False).encode("utf-8"),
                headers={"Content-Type": "application/json"},
                timeout=self.config.timeout_seconds,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            raise RemoteError(f"Remote write failed: {exc}") from exc

    def open_stream(self) -> requests.Response:
        try:
            response = self._session.get(
                self.record_url,
                headers={"Accept": "text/event-stream"},
                stream=True,
                timeout=(self.config.timeout_seconds, None),
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            raise RemoteError(f"Remote stream failed: {exc}") from exc
        return response

    def subscribe(self, on_change: ChangeCallback, on_error: ErrorCallback) -> Subscription:
        subscription = _StreamSubscription(self, on_change, on_error)
        subscription.start()
        logger.info("Listening for remote changes at %s", self.record_url)
        return subscription


def build_remote(config: RemoteConfig) -> RemoteRecord | None:
    base_url = config.base_url.strip()
    if not base_url:
        return None
    if base_url.startswith("memory://"):
        return MemoryRemoteRecord()
    return HTTPRemoteRecord(config)
