from __future__ import annotations

import logging
import time
import traceback
from dataclasses import dataclass
from datetime import tzinfo
from urllib.parse import quote

import requests

from taskfeed.errors import FetchError, FormatError
from taskfeed.feed_parser import parse_feed
from taskfeed.models import FeedsConfig, Source, SourceDescriptor, SyncBatchResult
from taskfeed.reconciler import MergeOutcome, merge_feed, remove_source
from taskfeed.replication import ReplicationCoordinator
from taskfeed.state_store import StateStore


logger = logging.getLogger(__name__)


def normalize_feed_url(url: str) -> str:
    text = str(url or "").strip()
    if text.lower().startswith("webcal://"):
        return "https://" + text[len("webcal://") :]
    return text


class FeedFetcher:
    def __init__(self, config: FeedsConfig, session: requests.Session | None = None) -> None:
        self.config = config
        self._session = session or requests.Session()

    def candidate_urls(self, url: str) -> list[str]:
        target = normalize_feed_url(url)
        if not self.config.proxies:
            return [target]
        encoded = quote(target, safe="")
        return [template.replace("{url}", encoded) for template in self.config.proxies]

    def fetch(self, url: str) -> str:
        target = normalize_feed_url(url)
        if not target:
            raise FetchError("Feed URL is empty.", url=url)
        last_error = ""
        for candidate in self.candidate_urls(target):
            try:
                response = self._session.get(
                    candidate,
                    headers={"User-Agent": self.config.user_agent},
                    timeout=self.config.timeout_seconds,
                )
            except requests.RequestException as exc:
                last_error = f"{type(exc).__name__}: {exc}"
                logger.warning("Feed fetch via %s failed: %s", candidate, last_error)
                continue
            if not response.ok:
                last_error = f"HTTP {response.status_code}"
                logger.warning("Feed fetch via %s failed: %s", candidate, last_error)
                continue
            return response.text
        raise FetchError(f"Failed to fetch calendar: {last_error}", url=target)


@dataclass
class ImportResult:
    source: SourceDescriptor
    imported_events: int
    created_tasks: int
    skipped_expired: int
    skipped_ignored: int

    def to_dict(self) -> dict[str, object]:
        return {
            "source": {"name": self.source.name, "url": self.source.url, "type": self.source.type},
            "imported_events": self.imported_events,
            "created_tasks": self.created_tasks,
            "skipped_expired": self.skipped_expired,
            "skipped_ignored": self.skipped_ignored,
        }


class SourceRegistry:
    def __init__(
        self,
        coordinator: ReplicationCoordinator,
        fetcher: FeedFetcher,
        state_store: StateStore,
        *,
        local_tz: tzinfo | None = None,
    ) -> None:
        self.coordinator = coordinator
        self.fetcher = fetcher
        self.state_store = state_store
        self.local_tz = local_tz

    def list_sources(self) -> list[Source]:
        return self.coordinator.snapshot().sources

    def import_url(self, url: str, name: str = "iCal Feed") -> ImportResult:
        target = normalize_feed_url(url)
        if not target:
            raise ValueError("Please enter a URL.")
        text = self.fetcher.fetch(target)
        return self._import(text, SourceDescriptor.for_url(target, name or "iCal Feed"))

    def import_text(self, text: str, name: str) -> ImportResult:
        return self._import(text, SourceDescriptor.for_file(name or "Uploaded file"))

    def resync(self, source_id: str) -> ImportResult:
        source = self.coordinator.snapshot().find_source(source_id)
        if source is None:
            raise KeyError(source_id)
        if not source.url:
            raise ValueError("Source has no URL to sync from.")
        text = self.fetcher.fetch(source.url)
        return self._import(text, SourceDescriptor.for_url(source.url, source.name))

    def resync_all(self, trigger: str = "manual") -> SyncBatchResult:
        started = time.monotonic()
        result = SyncBatchResult(trigger=trigger)
        for source in self.list_sources():
            if not source.url:
                continue
            try:
                outcome = self.resync(source.id)
            except (FetchError, FormatError, KeyError, ValueError) as exc:
                error_message = f"{type(exc).__name__}: {exc}"
                logger.warning("Sync failed for %s: %s", source.name, error_message)
                result.failed += 1
                result.errors[source.id] = error_message
                self.state_store.record_audit_event(
                    scope="source",
                    subject_id=source.id,
                    action="sync_failed",
                    details={
                        "trigger": trigger,
                        "name": source.name,
                        "url": source.url,
                        "error": error_message,
                        "traceback": traceback.format_exc(limit=5),
                    },
                )
                continue
            result.succeeded += 1
            result.imported_events += outcome.imported_events
            result.created_tasks += outcome.created_tasks
        result.duration_ms = int((time.monotonic() - started) * 1000)
        self.state_store.record_sync_run(result)
        logger.info("Sync complete (%s): %s", trigger, result.message)
        return result

    def remove(self, source_id: str) -> Source:
        removed = self.coordinator.mutate(
            lambda snapshot: remove_source(snapshot, source_id),
            action="remove_source",
        )
        self.state_store.record_audit_event(
            scope="source",
            subject_id=removed.id,
            action="remove_source",
            details={"name": removed.name, "url": removed.url},
        )
        return removed

    def _import(self, text: str, source: SourceDescriptor) -> ImportResult:
        document = parse_feed(text, self.local_tz)
        cutoff = self.coordinator.cutoff

        def _merge(snapshot):
            outcome: MergeOutcome = merge_feed(snapshot, document, source, cutoff=cutoff)
            return outcome.snapshot, outcome

        outcome = self.coordinator.mutate(_merge, action=f"import:{source.type}")
        result = ImportResult(
            source=source,
            imported_events=outcome.imported_events,
            created_tasks=outcome.created_tasks,
            skipped_expired=outcome.skipped_expired,
            skipped_ignored=outcome.skipped_ignored,
        )
        self.state_store.record_audit_event(
            scope="source",
            subject_id=source.url or source.name,
            action="import",
            details=result.to_dict(),
        )
        logger.info(
            "Import complete from %s: %d events, %d new tasks",
            source.name,
            result.imported_events,
            result.created_tasks,
        )
        return result
