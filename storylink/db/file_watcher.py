"""Task store watcher using watchfiles.

Each project with at least one subscriber gets a ProjectWatcher that observes
its task store, debounces raw change signals, invalidates the project's cached
views and pushes the fresh task list to every subscriber.
"""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Optional

from watchfiles import Change, awatch

from storylink import config
from storylink.date_utils import epoch_ms
from storylink.errors import NotFoundError, WatchFailureError
from storylink.observability import record_push

logger = logging.getLogger("storylink.watcher")


class WatcherState(str, Enum):
    IDLE = "idle"
    WATCHING = "watching"
    NOTIFYING = "notifying"


class QueueChannel:
    """Subscriber channel backed by an asyncio.Queue.

    ``send`` never blocks: it raises once the channel is closed or when a slow
    consumer has let the queue fill up.
    """

    def __init__(self, maxsize: int = config.CHANNEL_QUEUE_SIZE):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    def send(self, event: dict[str, Any]) -> None:
        if self.closed:
            raise RuntimeError("Channel is closed")
        self._queue.put_nowait(event)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(None)

    async def stream(self) -> AsyncIterator[dict[str, Any]]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event


@dataclass
class Subscription:
    id: str
    project_id: str
    channel: Any
    connected_at: float
    last_heartbeat_at: float


async def watch_store_file(path: Path, stop_event: asyncio.Event) -> AsyncIterator[None]:
    """Yield once per batch of filesystem events touching ``path``."""
    async for changes in awatch(path.parent, stop_event=stop_event, recursive=False):
        if any(
            change in (Change.added, Change.modified) and Path(changed).name == path.name
            for change, changed in changes
        ):
            yield None


def _stat_mtime(path: Path) -> Optional[int]:
    try:
        return path.stat().st_mtime_ns
    except FileNotFoundError:
        return None


class ProjectWatcher:
    """Observer, debounce timer and change processing for one project."""

    def __init__(self, owner: "ChangeWatcher", project_id: str):
        self.owner = owner
        self.project_id = project_id
        self.state = WatcherState.IDLE
        self.path: Optional[Path] = None
        self.last_mtime: Optional[int] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._observer: Optional[asyncio.Task] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._processing: set[asyncio.Task] = set()
        self._lock = asyncio.Lock()
        self._stops = 0

    def start(self) -> bool:
        """Attach the change source. Returns False (and pushes an error) on failure."""
        if self.state is not WatcherState.IDLE:
            return True
        try:
            path = self.owner.task_repository.store_path(self.project_id)
            if not path.parent.is_dir():
                raise WatchFailureError(f"Watch directory does not exist: {path.parent}")
            stop_event = asyncio.Event()
            source = self.owner.change_source(path, stop_event)
        except (WatchFailureError, NotFoundError, OSError) as exc:
            logger.error(f"Failed to watch task store for project {self.project_id}: {exc}")
            self.owner.broadcast_error(self.project_id, f"Failed to watch task store: {exc}")
            return False

        self.path = path
        self.last_mtime = _stat_mtime(path)
        self._stop_event = stop_event
        self.state = WatcherState.WATCHING
        self._observer = asyncio.create_task(self._observe(source))
        logger.info(f"Watching {path} for project {self.project_id}")
        return True

    async def _observe(self, source) -> None:
        try:
            async for _ in source:
                self.signal()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Task store watcher error for project {self.project_id}: {e}")
            self._cancel_timer()
            self.state = WatcherState.IDLE
            self.owner.broadcast_error(self.project_id, f"Watch failed: {e}")

    def signal(self) -> None:
        """Record a raw change signal; only the last one in a burst fires."""
        if self.state is WatcherState.IDLE:
            return
        self._cancel_timer()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.owner.debounce_seconds, self._fire)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _fire(self) -> None:
        self._timer = None
        task = asyncio.create_task(self.process_change())
        self._processing.add(task)
        task.add_done_callback(self._processing.discard)

    async def process_change(self) -> bool:
        """Push fresh tasks if the store's mtime advanced. Returns True when a push happened.

        Runs one at a time per project, so a change landing while a read is in
        flight is picked up by the next run instead of racing it.
        """
        async with self._lock:
            return await self._process_change()

    async def _process_change(self) -> bool:
        if self.path is None or self.state is WatcherState.IDLE:
            return False
        current = _stat_mtime(self.path)
        if current is None or (self.last_mtime is not None and current <= self.last_mtime):
            logger.debug(f"Ignoring change signal without mtime advance for project {self.project_id}")
            return False

        stops = self._stops
        self.state = WatcherState.NOTIFYING
        try:
            document = await self.owner.task_repository.read_all(self.project_id)
        except Exception as e:
            logger.error(f"Error reading task store for project {self.project_id}: {e}")
            if stops != self._stops:
                return False
            self.owner.broadcast_error(self.project_id, f"Failed to read tasks: {e}")
            self.state = WatcherState.WATCHING
            return False

        if stops != self._stops:
            # Stopped while the read was in flight.
            return False

        self.last_mtime = current
        self.owner.cache.clear(project_id=self.project_id)
        self.owner.broadcast(self.project_id, {
            "type": "tasks_updated",
            "projectId": self.project_id,
            "tasks": document.get("tasks", []),
            "timestamp": self.owner.timestamp(),
        })
        self.state = WatcherState.WATCHING
        logger.info(f"Pushed task update for project {self.project_id}")
        return True

    async def stop(self) -> None:
        self._stops += 1
        self._cancel_timer()
        if self._stop_event is not None:
            self._stop_event.set()
        self.state = WatcherState.IDLE

        current = asyncio.current_task()
        tasks = [t for t in [self._observer, *self._processing] if t is not None and t is not current]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._observer = None
        self._stop_event = None
        logger.info(f"Stopped watching task store for project {self.project_id}")


class ChangeWatcher:
    """Subscriber registry plus one ProjectWatcher per subscribed project."""

    def __init__(
        self,
        task_repository,
        cache,
        *,
        debounce_seconds: float = config.WATCH_DEBOUNCE_MS / 1000,
        heartbeat_seconds: float = config.HEARTBEAT_SECONDS,
        change_source: Optional[Callable[[Path, asyncio.Event], AsyncIterator[Any]]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.task_repository = task_repository
        self.cache = cache
        self.debounce_seconds = debounce_seconds
        self.heartbeat_seconds = heartbeat_seconds
        self.change_source = change_source or watch_store_file
        self.clock = clock
        self._watchers: dict[str, ProjectWatcher] = {}
        self._subscriptions: dict[str, Subscription] = {}
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._background: set[asyncio.Task] = set()

    def timestamp(self) -> int:
        return epoch_ms(self.clock())

    def watcher_for(self, project_id: str) -> ProjectWatcher:
        watcher = self._watchers.get(project_id)
        if watcher is None:
            watcher = ProjectWatcher(self, project_id)
            self._watchers[project_id] = watcher
        return watcher

    def subscribers(self, project_id: str) -> list[Subscription]:
        return [sub for sub in self._subscriptions.values() if sub.project_id == project_id]

    @property
    def is_running(self) -> bool:
        return any(w.state is not WatcherState.IDLE for w in self._watchers.values())

    async def subscribe(self, project_id: str, channel) -> Subscription:
        now = self.clock()
        subscription = Subscription(
            id=uuid.uuid4().hex,
            project_id=project_id,
            channel=channel,
            connected_at=now,
            last_heartbeat_at=now,
        )
        self._subscriptions[subscription.id] = subscription
        logger.info(f"Subscriber {subscription.id} connected to project {project_id}")

        if not self._send(subscription, {
            "type": "connected",
            "projectId": project_id,
            "timestamp": self.timestamp(),
        }):
            await self._release(project_id)
            return subscription

        watcher = self.watcher_for(project_id)
        if watcher.state is WatcherState.IDLE:
            watcher.start()
        self._ensure_heartbeat()
        return subscription

    async def unsubscribe(self, handle) -> None:
        sub_id = handle.id if isinstance(handle, Subscription) else str(handle)
        subscription = self._subscriptions.pop(sub_id, None)
        if subscription is None:
            return
        logger.info(f"Subscriber {sub_id} disconnected from project {subscription.project_id}")
        await self._release(subscription.project_id)

    async def release_project(self, project_id: str, reason: str) -> int:
        """Disconnect every subscriber of ``project_id`` and stop its watcher."""
        self.broadcast_error(project_id, reason)
        released = self.subscribers(project_id)
        for subscription in released:
            self._subscriptions.pop(subscription.id, None)
            close = getattr(subscription.channel, "close", None)
            if callable(close):
                close()
        watcher = self._watchers.pop(project_id, None)
        if watcher is not None and watcher.state is not WatcherState.IDLE:
            await watcher.stop()
        if not self._subscriptions:
            await self._stop_heartbeat()
        logger.info(f"Released {len(released)} subscriber(s) of project {project_id}")
        return len(released)

    async def _release(self, project_id: str) -> None:
        """Tear down the project's watcher (and the heartbeat) once nobody listens."""
        if not self.subscribers(project_id):
            watcher = self._watchers.get(project_id)
            if watcher is not None and watcher.state is not WatcherState.IDLE:
                await watcher.stop()
        if not self._subscriptions:
            await self._stop_heartbeat()

    def _send(self, subscription: Subscription, event: dict[str, Any]) -> bool:
        try:
            subscription.channel.send(event)
        except Exception as e:
            logger.warning(f"Dropping subscriber {subscription.id}: {e}")
            self._subscriptions.pop(subscription.id, None)
            return False
        return True

    def _schedule_release(self, project_id: str) -> None:
        task = asyncio.create_task(self._release(project_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def broadcast(self, project_id: str, event: dict[str, Any]) -> int:
        delivered = 0
        dropped = False
        for subscription in self.subscribers(project_id):
            if self._send(subscription, event):
                delivered += 1
            else:
                dropped = True
        if delivered:
            record_push(str(event.get("type", "")), project_id=project_id, count=delivered)
        if dropped and not self.subscribers(project_id):
            self._schedule_release(project_id)
        return delivered

    def broadcast_error(self, project_id: str, message: str) -> int:
        return self.broadcast(project_id, {
            "type": "error",
            "projectId": project_id,
            "error": message,
            "timestamp": self.timestamp(),
        })

    async def send_heartbeats(self) -> int:
        """Send one heartbeat to every subscriber, dropping channels that fail."""
        now = self.clock()
        event = {"type": "heartbeat", "timestamp": epoch_ms(now)}
        delivered = 0
        emptied: set[str] = set()
        for subscription in list(self._subscriptions.values()):
            if self._send(subscription, event):
                subscription.last_heartbeat_at = now
                delivered += 1
            else:
                emptied.add(subscription.project_id)
        if delivered:
            record_push("heartbeat", project_id="*", count=delivered)
        for project_id in emptied:
            await self._release(project_id)
        return delivered

    def _ensure_heartbeat(self) -> None:
        if self._heartbeat_task is None or self._heartbeat_task.done():
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    async def _heartbeat_loop(self) -> None:
        while self._subscriptions:
            await asyncio.sleep(self.heartbeat_seconds)
            await self.send_heartbeats()

    async def _stop_heartbeat(self) -> None:
        task = self._heartbeat_task
        if task is None or task is asyncio.current_task():
            return
        self._heartbeat_task = None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def shutdown(self) -> None:
        """Stop every observer and the heartbeat loop, closing open channels."""
        for watcher in self._watchers.values():
            if watcher.state is not WatcherState.IDLE:
                await watcher.stop()
        await self._stop_heartbeat()
        for subscription in list(self._subscriptions.values()):
            close = getattr(subscription.channel, "close", None)
            if callable(close):
                close()
        self._subscriptions.clear()
        for task in list(self._background):
            task.cancel()
        logger.info("Change watcher stopped")

    def status(self) -> dict[str, Any]:
        return {
            "running": self.is_running,
            "subscribers": len(self._subscriptions),
            "projects": {
                project_id: {
                    "state": watcher.state.value,
                    "subscribers": len(self.subscribers(project_id)),
                    "storePath": str(watcher.path) if watcher.path else "",
                }
                for project_id, watcher in self._watchers.items()
            },
        }
