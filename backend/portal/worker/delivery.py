"""
Delivery Worker – the background script behind /sw.js.

The browser runs the worker independently of any open page and wakes it for
platform events. The worker is modelled as an explicit state machine:

    installing → installed → activating → activated (idle)
    activated  → displaying → activated          (push)
    activated  → routing    → closed             (notification click)

Pushes and clicks may overlap; a push arriving while another is displaying is
shown as well, and the shared tag lets the newest one replace the visible one.

Each event type has one named handler. Apart from its lifecycle state the
worker keeps nothing between events. ``render_service_worker`` emits the
JavaScript the browser actually executes, built from the same configuration.
"""
from __future__ import annotations

import asyncio
import enum
import json
import logging
from collections.abc import Awaitable
from dataclasses import dataclass, field
from typing import Any, Protocol

from portal.core.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

APP_ROOT = "/"
ACTION_VIEW = "view"
ACTION_CLOSE = "close"


class WorkerState(str, enum.Enum):
    INSTALLING = "installing"
    INSTALLED = "installed"
    ACTIVATING = "activating"
    ACTIVATED = "activated"
    DISPLAYING = "displaying"
    ROUTING = "routing"
    CLOSED = "closed"


IDLE_STATES = {WorkerState.ACTIVATED, WorkerState.CLOSED}
# push and click events arrive independently of each other once activated
RUNNING_STATES = IDLE_STATES | {WorkerState.DISPLAYING, WorkerState.ROUTING}


class WorkerStateError(RuntimeError):
    pass


class ShownNotification(Protocol):
    data: dict[str, Any]

    def close(self) -> None: ...


class Platform(Protocol):
    """What the worker needs from its host (ServiceWorkerGlobalScope)."""

    async def skip_waiting(self) -> None: ...

    async def claim_clients(self) -> None: ...

    async def show_notification(self, title: str, options: dict[str, Any]) -> None: ...

    async def open_window(self, url: str) -> None: ...


# ── Events ───────────────────────────────────────────────────────────────────

class ExtendableEvent:
    """Event whose lifetime the handler can extend with wait_until()."""

    def __init__(self) -> None:
        self._pending: list[asyncio.Future] = []

    def wait_until(self, work: Awaitable[Any]) -> None:
        self._pending.append(asyncio.ensure_future(work))

    async def settle(self) -> None:
        if self._pending:
            await asyncio.gather(*self._pending)


class InstallEvent(ExtendableEvent):
    pass


class ActivateEvent(ExtendableEvent):
    pass


class PushEvent(ExtendableEvent):

    def __init__(self, data: bytes | str | None = None) -> None:
        super().__init__()
        self.data = data


class NotificationClickEvent(ExtendableEvent):

    def __init__(self, notification: ShownNotification, action: str = "") -> None:
        super().__init__()
        self.notification = notification
        self.action = action


class NotificationCloseEvent(ExtendableEvent):

    def __init__(self, notification: ShownNotification) -> None:
        super().__init__()
        self.notification = notification


# ── Worker ───────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class WorkerConfig:
    default_icon: str = "/logo.png"
    default_badge: str = "/logo.png"
    tag: str = "portal-notification"
    fallback_title: str = "New notification"

    @classmethod
    def from_settings(cls, config: Settings = default_settings) -> "WorkerConfig":
        return cls(
            default_icon=config.PUSH_DEFAULT_ICON,
            default_badge=config.PUSH_DEFAULT_BADGE,
            tag=config.PUSH_TAG,
        )


def notification_options(payload: dict[str, Any], config: WorkerConfig) -> dict[str, Any]:
    return {
        "body": payload.get("body", ""),
        "icon": payload.get("icon") or config.default_icon,
        "badge": payload.get("badge") or config.default_badge,
        "data": payload.get("data") or {},
        "actions": payload.get("actions") or [],
        "requireInteraction": True,
        # same tag: a newer notification replaces the visible one
        "tag": config.tag,
    }


@dataclass
class DeliveryWorker:
    platform: Platform
    config: WorkerConfig = field(default_factory=WorkerConfig)
    state: WorkerState = WorkerState.INSTALLING

    def __post_init__(self) -> None:
        self._displaying = 0
        self._handlers = {
            InstallEvent: self.on_install,
            ActivateEvent: self.on_activate,
            PushEvent: self.on_push,
            NotificationClickEvent: self.on_notification_click,
            NotificationCloseEvent: self.on_notification_close,
        }

    def _transition(self, allowed: set[WorkerState], to: WorkerState) -> None:
        if self.state not in allowed:
            raise WorkerStateError(f"cannot go from {self.state.value} to {to.value}")
        logger.debug("worker %s -> %s", self.state.value, to.value)
        self.state = to

    async def handle(self, event: ExtendableEvent) -> Any:
        handler = self._handlers.get(type(event))
        if handler is None:
            raise TypeError(f"unsupported event {type(event).__name__}")
        return await handler(event)

    async def on_install(self, event: InstallEvent) -> None:
        """Take over immediately instead of waiting for older workers to finish."""
        self._transition({WorkerState.INSTALLING}, WorkerState.INSTALLED)
        await self.platform.skip_waiting()
        await event.settle()

    async def on_activate(self, event: ActivateEvent) -> None:
        """Claim every open tab so no reload is needed."""
        self._transition({WorkerState.INSTALLED}, WorkerState.ACTIVATING)
        event.wait_until(self.platform.claim_clients())
        await event.settle()
        self._transition({WorkerState.ACTIVATING}, WorkerState.ACTIVATED)

    async def on_push(self, event: PushEvent) -> bool:
        """Shows the OS notification; returns False when the push carried nothing to show."""
        if self.state not in RUNNING_STATES:
            raise WorkerStateError(f"push received while {self.state.value}")
        if not event.data:
            return False

        if isinstance(event.data, bytes):
            raw = event.data.decode("utf-8", errors="replace")
        else:
            raw = event.data
        try:
            payload = json.loads(raw)
        except ValueError:
            payload = {"title": self.config.fallback_title, "body": raw}
        if not isinstance(payload, dict):
            payload = {"title": self.config.fallback_title, "body": str(payload)}

        self._transition(RUNNING_STATES, WorkerState.DISPLAYING)
        self._displaying += 1
        try:
            # without wait_until the platform may kill the worker before the notification shows
            event.wait_until(self.platform.show_notification(
                payload.get("title") or self.config.fallback_title,
                notification_options(payload, self.config),
            ))
            await event.settle()
        finally:
            self._displaying -= 1
            if not self._displaying and self.state is WorkerState.DISPLAYING:
                self.state = WorkerState.ACTIVATED
        return True

    async def on_notification_click(self, event: NotificationClickEvent) -> str | None:
        """Closes the notification and opens at most one window; returns the opened URL."""
        self._transition(RUNNING_STATES, WorkerState.ROUTING)
        try:
            event.notification.close()
            url = (event.notification.data or {}).get("url")
            if event.action == ACTION_VIEW and url:
                target = url
            elif event.action == ACTION_CLOSE:
                target = None
            else:
                target = APP_ROOT
            if target is not None:
                event.wait_until(self.platform.open_window(target))
            await event.settle()
        finally:
            self.state = WorkerState.DISPLAYING if self._displaying else WorkerState.CLOSED
        return target

    async def on_notification_close(self, event: NotificationCloseEvent) -> None:
        # Dismissing is not reading: nothing is marked read here
        logger.debug("notification dismissed without click")


# ── /sw.js ───────────────────────────────────────────────────────────────────

_SW_TEMPLATE = """\
// Delivery worker for portal push notifications. Generated; do not edit.
const CONFIG = __CONFIG__;

self.addEventListener('install', (event) => {
  event.waitUntil(self.skipWaiting());
});

self.addEventListener('activate', (event) => {
  event.waitUntil(self.clients.claim());
});

self.addEventListener('push', (event) => {
  if (!event.data) return;
  let payload;
  try {
    payload = event.data.json();
  } catch (e) {
    payload = { title: CONFIG.fallbackTitle, body: event.data.text() };
  }
  const options = {
    body: payload.body || '',
    icon: payload.icon || CONFIG.defaultIcon,
    badge: payload.badge || CONFIG.defaultBadge,
    data: payload.data || {},
    actions: payload.actions || [],
    requireInteraction: true,
    tag: CONFIG.tag,
  };
  event.waitUntil(
    self.registration.showNotification(payload.title || CONFIG.fallbackTitle, options)
  );
});

self.addEventListener('notificationclick', (event) => {
  event.notification.close();
  const url = (event.notification.data || {}).url;
  if (event.action === 'view' && url) {
    event.waitUntil(self.clients.openWindow(url));
  } else if (event.action === 'close') {
    return;
  } else {
    event.waitUntil(self.clients.openWindow(CONFIG.appRoot));
  }
});

self.addEventListener('notificationclose', () => {});
"""


def render_service_worker(config: WorkerConfig | None = None) -> str:
    config = config or WorkerConfig.from_settings()
    js_config = json.dumps({
        "defaultIcon": config.default_icon,
        "defaultBadge": config.default_badge,
        "tag": config.tag,
        "fallbackTitle": config.fallback_title,
        "appRoot": APP_ROOT,
    })
    return _SW_TEMPLATE.replace("__CONFIG__", js_config)
