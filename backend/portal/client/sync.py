"""
Sync Client – keeps a local view of the caller's notifications in step with
the server by polling.

* list + unread count every ``list_interval`` seconds, stats every
  ``stats_interval`` seconds (stats only when ``with_stats`` is set)
* at most one request per resource in flight; concurrent refreshes share it
* mark_read / mark_all_read / delete update the local view first, then
  invalidate so the next fetch brings the server's answer
* stop() cancels every timer and pending request
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import httpx

from portal.core.config import settings

logger = logging.getLogger(__name__)

NOTIFICATIONS = "notifications"
STATS = "stats"

Listener = Callable[["SyncState"], None]


@dataclass
class SyncState:
    notifications: list[dict[str, Any]] = field(default_factory=list)
    unread_count: int = 0
    stats: dict[str, Any] | None = None
    last_synced_at: datetime | None = None
    # consecutive poll failures per resource
    failures: dict[str, int] = field(default_factory=dict)

    @property
    def consecutive_failures(self) -> int:
        return max(self.failures.values(), default=0)


class NotificationSyncClient:

    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        list_interval: float | None = None,
        stats_interval: float | None = None,
        with_stats: bool = False,
        filters: dict[str, Any] | None = None,
        failure_threshold: int | None = None,
        on_error: Callable[[Exception], None] | None = None,
        owns_http: bool = False,
    ):
        self.http = http
        self.list_interval = list_interval or settings.NOTIFICATION_POLL_INTERVAL
        self.stats_interval = stats_interval or settings.STATS_POLL_INTERVAL
        self.with_stats = with_stats
        self.filters = dict(filters or {})
        self.failure_threshold = failure_threshold or settings.POLL_FAILURE_THRESHOLD
        self.on_error = on_error
        self.state = SyncState()

        self._owns_http = owns_http
        self._listeners: list[Listener] = []
        self._inflight: dict[str, asyncio.Task] = {}
        self._pollers: list[asyncio.Task] = []
        self._background: set[asyncio.Task] = set()
        self._closed = False

    @classmethod
    def connect(cls, base_url: str, token: str, **kwargs) -> "NotificationSyncClient":
        http = httpx.AsyncClient(
            base_url=base_url,
            headers={"Authorization": f"Bearer {token}"},
            timeout=10.0,
        )
        return cls(http, owns_http=True, **kwargs)

    # ── Lifecycle ────────────────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._pollers)

    async def start(self) -> None:
        if self._closed:
            raise RuntimeError("sync client already stopped")
        if self.running:
            return
        self._pollers.append(asyncio.create_task(
            self._poll(NOTIFICATIONS, self.list_interval, self.refresh_notifications)
        ))
        if self.with_stats:
            self._pollers.append(asyncio.create_task(
                self._poll(STATS, self.stats_interval, self.refresh_stats)
            ))

    async def stop(self) -> None:
        """Cancels polling and pending fetches; nothing runs after this returns."""
        self._closed = True
        tasks = [*self._pollers, *self._inflight.values(), *self._background]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._pollers.clear()
        self._inflight.clear()
        self._background.clear()
        if self._owns_http:
            await self.http.aclose()

    aclose = stop

    async def __aenter__(self) -> "NotificationSyncClient":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Registers a change listener; returns a function that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self.state)
            except Exception:
                logger.exception("sync listener failed")

    # ── Fetching ─────────────────────────────────────────────────────────────

    def _coalesced(self, resource: str, fetch: Callable[[], Awaitable[None]]) -> asyncio.Task:
        task = self._inflight.get(resource)
        if task is None or task.done():
            task = asyncio.create_task(fetch())
            self._inflight[resource] = task

            def _clear(done: asyncio.Task, resource: str = resource) -> None:
                if self._inflight.get(resource) is done:
                    del self._inflight[resource]

            task.add_done_callback(_clear)
        return task

    async def refresh_notifications(self) -> SyncState:
        await asyncio.shield(self._coalesced(NOTIFICATIONS, self._fetch_notifications))
        return self.state

    async def refresh_stats(self) -> SyncState:
        await asyncio.shield(self._coalesced(STATS, self._fetch_stats))
        return self.state

    async def _fetch_notifications(self) -> None:
        params = {k: _query_value(v) for k, v in self.filters.items() if v is not None}
        resp = await self.http.get("/api/notifications", params=params)
        resp.raise_for_status()
        body = resp.json()
        self.state.notifications = list(body.get("notifications", []))
        self.state.unread_count = int(body.get("unreadCount", 0))
        self.state.last_synced_at = datetime.now(timezone.utc)
        self._emit()

    async def _fetch_stats(self) -> None:
        resp = await self.http.get("/api/notifications/stats")
        resp.raise_for_status()
        self.state.stats = resp.json()
        self._emit()

    async def _guarded(self, resource: str, refresh: Callable[[], Awaitable[SyncState]]) -> None:
        try:
            await refresh()
        except (httpx.HTTPError, ValueError) as exc:
            self._record_failure(resource, exc)
        else:
            self.state.failures[resource] = 0

    def _record_failure(self, resource: str, exc: Exception) -> None:
        failures = self.state.failures.get(resource, 0) + 1
        self.state.failures[resource] = failures
        if failures == self.failure_threshold:
            logger.error("Polling %s failed %d times in a row: %s", resource, failures, exc)
            if self.on_error is not None:
                self.on_error(exc)
        else:
            # retried on the next interval
            logger.warning("Polling %s failed (%d): %s", resource, failures, exc)

    async def _poll(self, resource: str, interval: float, refresh) -> None:
        while True:
            await self._guarded(resource, refresh)
            await asyncio.sleep(interval)

    def invalidate(self, resource: str = NOTIFICATIONS) -> None:
        """Schedules a fresh fetch so the server's state replaces optimistic edits."""
        if self._closed:
            return
        refresh = self.refresh_stats if resource == STATS else self.refresh_notifications
        task = asyncio.create_task(self._guarded(resource, refresh))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ── Mutations ────────────────────────────────────────────────────────────

    def _find(self, notification_id: str) -> dict[str, Any] | None:
        for item in self.state.notifications:
            if str(item.get("id")) == notification_id:
                return item
        return None

    async def _mutate(self, method: str, url: str) -> None:
        try:
            resp = await self.http.request(method, url)
            resp.raise_for_status()
        finally:
            self.invalidate()
            if self.with_stats:
                self.invalidate(STATS)

    async def mark_read(self, notification_id) -> None:
        nid = str(notification_id)
        item = self._find(nid)
        if item is not None and not item.get("isRead"):
            item["isRead"] = True
            item["readAt"] = datetime.now(timezone.utc).isoformat()
            self.state.unread_count = max(self.state.unread_count - 1, 0)
            self._emit()
        await self._mutate("PUT", f"/api/notifications/{nid}/read")

    async def mark_all_read(self) -> None:
        now = datetime.now(timezone.utc).isoformat()
        for item in self.state.notifications:
            if not item.get("isRead"):
                item["isRead"] = True
                item["readAt"] = now
        self.state.unread_count = 0
        self._emit()
        await self._mutate("PUT", "/api/notifications/read-all")

    async def delete(self, notification_id) -> None:
        nid = str(notification_id)
        item = self._find(nid)
        if item is not None:
            self.state.notifications.remove(item)
            if not item.get("isRead"):
                self.state.unread_count = max(self.state.unread_count - 1, 0)
            self._emit()
        await self._mutate("DELETE", f"/api/notifications/{nid}")


def _query_value(value: Any) -> Any:
    if isinstance(value, bool):
        return "true" if value else "false"
    return value
