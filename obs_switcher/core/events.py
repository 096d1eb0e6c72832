"""
core/events.py — Event bus for server-pushed OBS events and client state.

Subscribers get a Subscription handle back and are expected to hold on to it;
unsubscribe() is the only way a listener goes away. Delivery is synchronous
and in arrival order. Coroutine callbacks are scheduled as tasks on the
running loop. A subscriber that raises is logged and skipped; the rest of
the subscribers still get the event.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from typing import Any, Callable, Optional

log = logging.getLogger(__name__)

Callback = Callable[..., Any]

# Notification names
CONNECTION_CHANGED = "connection_changed"
RECONNECTING = "reconnecting"
SCENE_CHANGED = "scene_changed"
SCENE_LIST_CHANGED = "scene_list_changed"
SCENE_CREATED = "scene_created"
SCENE_REMOVED = "scene_removed"
SCENE_RENAMED = "scene_renamed"
INPUT_CREATED = "input_created"
INPUT_REMOVED = "input_removed"
INPUT_RENAMED = "input_renamed"
INPUT_MUTE_CHANGED = "input_mute_changed"


def _scene_changed(d: dict) -> tuple:
    return (d.get("sceneName", ""),)


# OBS eventType -> (notification, eventData -> callback args)
EVENT_MAP: dict[str, tuple[str, Callable[[dict], tuple]]] = {
    "CurrentProgramSceneChanged": (SCENE_CHANGED, _scene_changed),
    "CurrentSceneChanged": (SCENE_CHANGED, _scene_changed),  # pre-v5 servers
    "SceneListChanged": (SCENE_LIST_CHANGED, lambda d: (d.get("scenes", []),)),
    "SceneCreated": (SCENE_CREATED, lambda d: (d.get("sceneName", ""),)),
    "SceneRemoved": (SCENE_REMOVED, lambda d: (d.get("sceneName", ""),)),
    "SceneNameChanged": (SCENE_RENAMED, lambda d: (d.get("oldSceneName", ""), d.get("sceneName", ""))),
    "InputCreated": (INPUT_CREATED, lambda d: (d.get("inputName", ""), d.get("inputKind", ""))),
    "InputRemoved": (INPUT_REMOVED, lambda d: (d.get("inputName", ""),)),
    "InputNameChanged": (INPUT_RENAMED, lambda d: (d.get("oldInputName", ""), d.get("inputName", ""))),
    "InputMuteStateChanged": (INPUT_MUTE_CHANGED, lambda d: (d.get("inputName", ""), bool(d.get("inputMuted")))),
}


class Subscription:
    def __init__(self, dispatcher: "EventDispatcher", name: str, callback: Callback):
        self._dispatcher = dispatcher
        self.name = name
        self.callback = callback
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        if self._active:
            self._active = False
            self._dispatcher._remove(self)

    def __repr__(self) -> str:
        state = "active" if self._active else "inactive"
        return f"<Subscription {self.name} {state}>"


class EventDispatcher:
    def __init__(self):
        self._subscribers: dict[str, list[Subscription]] = defaultdict(list)
        self._tasks: set[asyncio.Task] = set()

    def subscribe(self, name: str, callback: Callback) -> Subscription:
        sub = Subscription(self, name, callback)
        self._subscribers[name].append(sub)
        return sub

    def subscriber_count(self, name: Optional[str] = None) -> int:
        if name is not None:
            return len(self._subscribers.get(name, []))
        return sum(len(subs) for subs in self._subscribers.values())

    def _remove(self, sub: Subscription) -> None:
        subs = self._subscribers.get(sub.name, [])
        if sub in subs:
            subs.remove(sub)
        if not subs:
            self._subscribers.pop(sub.name, None)

    def emit(self, name: str, *args: Any) -> None:
        # Copy: a subscriber may unsubscribe itself (or others) mid-dispatch.
        for sub in list(self._subscribers.get(name, [])):
            if not sub.active:
                continue
            try:
                result = sub.callback(*args)
                if inspect.isawaitable(result):
                    self._schedule(name, result)
            except Exception:
                log.exception(f"Subscriber for '{name}' raised")

    def dispatch_event(self, event_type: str, event_data: Optional[dict] = None) -> None:
        """Translate one OBS Event frame into notifications."""
        event_data = event_data or {}
        mapped = EVENT_MAP.get(event_type)
        if mapped is not None:
            name, extract = mapped
            self.emit(name, *extract(event_data))
        else:
            log.debug(f"Unmapped OBS event: {event_type}")
        self.emit(event_type, event_data)

    def _schedule(self, name: str, awaitable: Any) -> None:
        task = asyncio.ensure_future(awaitable)
        self._tasks.add(task)

        def _done(t: asyncio.Task) -> None:
            self._tasks.discard(t)
            if not t.cancelled() and t.exception() is not None:
                log.error(f"Async subscriber for '{name}' raised", exc_info=t.exception())

        task.add_done_callback(_done)

    def clear(self) -> None:
        for subs in list(self._subscribers.values()):
            for sub in list(subs):
                sub.unsubscribe()
