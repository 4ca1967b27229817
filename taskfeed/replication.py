from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, TypeVar

from taskfeed.errors import RemoteError
from taskfeed.models import StoreSnapshot, new_token, utc_now
from taskfeed.reconciler import prune_expired
from taskfeed.remote import RemoteRecord, Subscription
from taskfeed.state_store import StateStore


logger = logging.getLogger(__name__)

T = TypeVar("T")

REPLICA_ID_META_KEY = "replica_id"
# Tags past this many are assumed lost and forgotten, oldest first.
MAX_PENDING_TAGS = 32


class ReplicationCoordinator:
    """Owns the in-memory snapshot and mirrors it to one shared remote record.

    Every local change goes through ``mutate``: the snapshot is replaced,
    persisted, then written to the remote. Each outbound write carries a
    ``lastUpdated`` version tag and this replica's ``writerId``; a
    notification with our writer id and a tag no newer than the last one we
    issued is an echo and is dropped. Any other
    notification replaces the local snapshot wholesale (last writer wins)
    and is persisted without writing back.
    """

    def __init__(
        self,
        state_store: StateStore,
        remote: RemoteRecord | None = None,
        *,
        cutoff: datetime,
        replica_id: str | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.state_store = state_store
        self.remote = remote
        self.cutoff = cutoff
        self.replica_id = replica_id or self._stored_replica_id()
        self._clock = clock
        self._lock = threading.RLock()
        self._snapshot = state_store.load_snapshot()
        self._pending_tags: list[str] = []
        self._last_tag_at: datetime | None = None
        self._last_tag = ""
        self._subscription: Subscription | None = None
        self._state = "local" if remote is None else "connecting"
        self._message = "Local only" if remote is None else "Connecting..."

    def _stored_replica_id(self) -> str:
        stored = self.state_store.get_meta(REPLICA_ID_META_KEY)
        if stored:
            return stored
        replica_id = new_token("replica-")
        self.state_store.set_meta(REPLICA_ID_META_KEY, replica_id)
        return replica_id

    @property
    def awaiting_own_write(self) -> bool:
        with self._lock:
            return bool(self._pending_tags)

    def snapshot(self) -> StoreSnapshot:
        with self._lock:
            return self._snapshot.clone()

    def status(self) -> dict[str, Any]:
        with self._lock:
            return {
                "state": self._state,
                "message": self._message,
                "awaitingOwnWrite": bool(self._pending_tags),
                "replicaId": self.replica_id,
            }

    def start(self) -> None:
        if self.remote is None:
            self.cleanup()
            return
        with self._lock:
            if self._subscription is not None:
                return
        subscription = self.remote.subscribe(self.handle_remote, self.handle_remote_error)
        with self._lock:
            self._subscription = subscription

    def stop(self) -> None:
        with self._lock:
            subscription = self._subscription
            self._subscription = None
            # no listener left to deliver the echoes
            self._pending_tags.clear()
        if subscription is not None:
            subscription.close()

    def set_remote(self, remote: RemoteRecord | None) -> None:
        """Swap the remote record and start following the new one."""
        self.stop()
        with self._lock:
            self.remote = remote
            if remote is None:
                self._set_status("local", "Local only")
            else:
                self._set_status("connecting", "Connecting...")
        logger.info("Remote record switched to %s", type(remote).__name__ if remote else "none")
        self.start()

    def mutate(self, fn: Callable[[StoreSnapshot], tuple[StoreSnapshot, T]], *, action: str = "mutate") -> T:
        with self._lock:
            updated, result = fn(self._snapshot.clone())
            self._commit(updated)
            logger.debug("Local change committed: %s", action)
            self._push()
            return result

    def replace(self, snapshot: StoreSnapshot, *, action: str = "replace") -> None:
        self.mutate(lambda _current: (snapshot.clone(), None), action=action)

    def cleanup(self) -> int:
        with self._lock:
            pruned, removed = prune_expired(self._snapshot, self.cutoff)
            if removed:
                logger.info("Removed %d records older than %s", removed, self.cutoff.date())
                self._commit(pruned)
                self._push()
            return removed

    def handle_remote(self, payload: dict[str, Any] | None) -> None:
        with self._lock:
            if payload is None:
                logger.info("Remote record missing, seeding it from the local store")
                self._push()
                return

            tag = str(payload.get("lastUpdated") or "")
            own_write = payload.get("writerId") == self.replica_id
            if own_write and tag and self._last_tag and tag <= self._last_tag:
                # echo of this write or of an older one given up on
                self._pending_tags = [pending for pending in self._pending_tags if pending > tag]
                return

            incoming = StoreSnapshot.from_dict(payload)
            pruned, removed = prune_expired(incoming, self.cutoff)
            self._commit(pruned)
            self._set_status("synced", "Synced (real-time)")
            logger.info(
                "Applied remote snapshot from %s: %d events, %d tasks",
                payload.get("writerId") or "unknown writer",
                len(pruned.events),
                len(pruned.tasks),
            )
            if removed:
                self._push()

    def handle_remote_error(self, exc: Exception) -> None:
        logger.warning("Remote listener error: %s", exc)
        with self._lock:
            self._pending_tags.clear()
        self._set_status("error", f"Error: {exc}")
        self.state_store.record_audit_event(
            scope="replication",
            subject_id=self.replica_id,
            action="remote_listen_failed",
            details={"error": f"{type(exc).__name__}: {exc}"},
        )

    def _commit(self, snapshot: StoreSnapshot) -> None:
        self._snapshot = snapshot
        self.state_store.save_snapshot(snapshot)

    def _next_tag(self) -> str:
        stamp = self._clock()
        if self._last_tag_at is not None and stamp <= self._last_tag_at:
            stamp = self._last_tag_at + timedelta(microseconds=1)
        self._last_tag_at = stamp
        self._last_tag = stamp.isoformat(timespec="microseconds")
        return self._last_tag

    def _push(self) -> bool:
        if self.remote is None:
            return False
        tag = self._next_tag()
        payload = self._snapshot.to_dict()
        payload["lastUpdated"] = tag
        payload["writerId"] = self.replica_id
        self._pending_tags.append(tag)
        if len(self._pending_tags) > MAX_PENDING_TAGS:
            del self._pending_tags[: len(self._pending_tags) - MAX_PENDING_TAGS]
        self._set_status("saving", "Saving...")
        try:
            self.remote.write(payload)
        except RemoteError as exc:
            if tag in self._pending_tags:
                self._pending_tags.remove(tag)
            logger.warning("Remote write failed: %s", exc)
            self._set_status("error", "Save failed")
            self.state_store.record_audit_event(
                scope="replication",
                subject_id=self.replica_id,
                action="remote_write_failed",
                details={"error": f"{type(exc).__name__}: {exc}", "tag": tag},
            )
            return False
        if self._state == "saving":
            self._set_status("saved", "Saved to remote")
        return True

    def _set_status(self, state: str, message: str) -> None:
        with self._lock:
            self._state = state
            self._message = message
