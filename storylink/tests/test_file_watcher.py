import asyncio
import json
import os
import tempfile
import time
import unittest
from pathlib import Path

from storylink.cache_manager import VIEW_HIERARCHY, CacheManager, make_cache_key
from storylink.db.file_watcher import ChangeWatcher, QueueChannel, WatcherState
from storylink.errors import StoreUnavailableError


class _QueueSource:
    """Change source fed by the test instead of the filesystem."""

    def __init__(self) -> None:
        self.queue: asyncio.Queue = asyncio.Queue()
        self.paths: list[Path] = []

    def __call__(self, path: Path, stop_event: asyncio.Event):
        self.paths.append(path)
        return self._iterate(stop_event)

    async def _iterate(self, stop_event: asyncio.Event):
        while not stop_event.is_set():
            item = await self.queue.get()
            if item is None:
                return
            yield item

    def signal(self) -> None:
        self.queue.put_nowait("change")


class _Repo:
    def __init__(self, path: Path) -> None:
        self.path = path
        self.fail = False
        self.reads = 0

    def store_path(self, project_id: str) -> Path:
        return self.path

    async def read_all(self, project_id: str) -> dict:
        self.reads += 1
        if self.fail:
            raise StoreUnavailableError("disk unavailable")
        return {"tasks": json.loads(self.path.read_text(encoding="utf-8"))}


class _GatedRepo(_Repo):
    """Snapshots the store on each read, then waits for ``gate`` before returning it."""

    def __init__(self, path: Path) -> None:
        super().__init__(path)
        self.gate = asyncio.Event()

    async def read_all(self, project_id: str) -> dict:
        document = await super().read_all(project_id)
        await self.gate.wait()
        return document


class _Channel:
    def __init__(self, fail_after: int | None = None) -> None:
        self.events: list[dict] = []
        self.fail_after = fail_after

    def send(self, event: dict) -> None:
        if self.fail_after is not None and len(self.events) >= self.fail_after:
            raise RuntimeError("client went away")
        self.events.append(event)

    def of_type(self, event_type: str) -> list[dict]:
        return [e for e in self.events if e["type"] == event_type]


def _write_tasks(path: Path, tasks: list[dict]) -> None:
    before = path.stat().st_mtime_ns if path.exists() else 0
    path.write_text(json.dumps(tasks), encoding="utf-8")
    bumped = max(before + 1_000_000_000, path.stat().st_mtime_ns)
    os.utime(path, ns=(bumped, bumped))


class ChangeWatcherTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.store = Path(self._tmp.name) / "tasks.json"
        _write_tasks(self.store, [{"id": "t1"}])
        self.repo = _Repo(self.store)
        self.cache = CacheManager()
        self.source = _QueueSource()
        self.watcher = ChangeWatcher(
            self.repo,
            self.cache,
            debounce_seconds=0.3,
            heartbeat_seconds=3600,
            change_source=self.source,
        )

    async def asyncTearDown(self) -> None:
        await self.watcher.shutdown()
        self._tmp.cleanup()

    async def test_subscribe_sends_connected_and_starts_watching(self) -> None:
        channel = _Channel()
        await self.watcher.subscribe("p1", channel)

        self.assertEqual(channel.events[0]["type"], "connected")
        self.assertEqual(channel.events[0]["projectId"], "p1")
        self.assertIsInstance(channel.events[0]["timestamp"], int)
        self.assertIs(self.watcher.watcher_for("p1").state, WatcherState.WATCHING)
        self.assertEqual(self.source.paths, [self.store])
        self.assertTrue(self.watcher.is_running)

    async def test_burst_of_signals_produces_one_push(self) -> None:
        channel = _Channel()
        await self.watcher.subscribe("p1", channel)
        self.cache.set(make_cache_key(VIEW_HIERARCHY, "p1"), {"stale": True})
        self.cache.set(make_cache_key(VIEW_HIERARCHY, "p2"), {"other": True})

        _write_tasks(self.store, [{"id": "t1"}, {"id": "t2"}])
        self.source.signal()
        await asyncio.sleep(0.1)
        self.source.signal()
        later_signal_ms = int(time.time() * 1000)
        await asyncio.sleep(0.6)

        updates = channel.of_type("tasks_updated")
        self.assertEqual(len(updates), 1)
        self.assertEqual(updates[0]["projectId"], "p1")
        self.assertEqual([t["id"] for t in updates[0]["tasks"]], ["t1", "t2"])
        self.assertGreaterEqual(updates[0]["timestamp"], later_signal_ms)
        self.assertEqual(self.repo.reads, 1)
        self.assertIsNone(self.cache.get(make_cache_key(VIEW_HIERARCHY, "p1")))
        self.assertEqual(self.cache.get(make_cache_key(VIEW_HIERARCHY, "p2")), {"other": True})
        self.assertIs(self.watcher.watcher_for("p1").state, WatcherState.WATCHING)

    async def test_signal_without_mtime_advance_is_ignored(self) -> None:
        channel = _Channel()
        await self.watcher.subscribe("p1", channel)
        project_watcher = self.watcher.watcher_for("p1")

        _write_tasks(self.store, [{"id": "t9"}])
        self.assertTrue(await project_watcher.process_change())
        self.assertFalse(await project_watcher.process_change())

        self.assertEqual(len(channel.of_type("tasks_updated")), 1)
        self.assertEqual(self.repo.reads, 1)

    async def test_read_failure_pushes_error_and_keeps_watching(self) -> None:
        channel = _Channel()
        await self.watcher.subscribe("p1", channel)
        project_watcher = self.watcher.watcher_for("p1")
        recorded = project_watcher.last_mtime

        self.repo.fail = True
        _write_tasks(self.store, [{"id": "t2"}])
        self.assertFalse(await project_watcher.process_change())

        errors = channel.of_type("error")
        self.assertEqual(len(errors), 1)
        self.assertIn("disk unavailable", errors[0]["error"])
        self.assertEqual(project_watcher.last_mtime, recorded)
        self.assertIs(project_watcher.state, WatcherState.WATCHING)

        self.repo.fail = False
        self.assertTrue(await project_watcher.process_change())
        self.assertEqual(len(channel.of_type("tasks_updated")), 1)

    async def test_last_unsubscribe_stops_the_project_watcher(self) -> None:
        first = await self.watcher.subscribe("p1", _Channel())
        second = await self.watcher.subscribe("p1", _Channel())
        project_watcher = self.watcher.watcher_for("p1")

        await self.watcher.unsubscribe(first)
        self.assertIs(project_watcher.state, WatcherState.WATCHING)

        await self.watcher.unsubscribe(second)
        self.assertIs(project_watcher.state, WatcherState.IDLE)
        self.assertFalse(self.watcher.is_running)
        self.assertEqual(self.watcher.status()["subscribers"], 0)

    async def test_heartbeat_drops_failing_channel_only(self) -> None:
        healthy = _Channel()
        broken = _Channel(fail_after=1)
        await self.watcher.subscribe("p1", healthy)
        await self.watcher.subscribe("p1", broken)

        delivered = await self.watcher.send_heartbeats()

        self.assertEqual(delivered, 1)
        self.assertEqual(len(healthy.of_type("heartbeat")), 1)
        self.assertEqual(len(self.watcher.subscribers("p1")), 1)
        self.assertIs(self.watcher.watcher_for("p1").state, WatcherState.WATCHING)

    async def test_start_failure_reports_error_and_stays_idle(self) -> None:
        missing_dir = Path(self._tmp.name) / "not-yet"
        self.repo.path = missing_dir / "tasks.json"
        channel = _Channel()

        await self.watcher.subscribe("p1", channel)

        self.assertEqual([e["type"] for e in channel.events], ["connected", "error"])
        self.assertIs(self.watcher.watcher_for("p1").state, WatcherState.IDLE)

        missing_dir.mkdir()
        await self.watcher.subscribe("p1", _Channel())
        self.assertIs(self.watcher.watcher_for("p1").state, WatcherState.WATCHING)

    async def _until_reads(self, repo: _Repo, count: int) -> None:
        while repo.reads < count:
            await asyncio.sleep(0)

    async def test_change_during_an_in_flight_read_is_pushed_afterwards(self) -> None:
        repo = _GatedRepo(self.store)
        self.watcher.task_repository = repo
        channel = _Channel()
        await self.watcher.subscribe("p1", channel)
        project_watcher = self.watcher.watcher_for("p1")

        _write_tasks(self.store, [{"id": "v2"}])
        first = asyncio.create_task(project_watcher.process_change())
        await self._until_reads(repo, 1)

        _write_tasks(self.store, [{"id": "v3"}])
        second = asyncio.create_task(project_watcher.process_change())
        await asyncio.sleep(0)
        self.assertEqual(repo.reads, 1)

        repo.gate.set()
        results = await asyncio.gather(first, second)

        self.assertEqual(results, [True, True])
        pushed = [[t["id"] for t in e["tasks"]] for e in channel.of_type("tasks_updated")]
        self.assertEqual(pushed, [["v2"], ["v3"]])
        self.assertEqual(project_watcher.last_mtime, self.store.stat().st_mtime_ns)
        self.assertIs(project_watcher.state, WatcherState.WATCHING)

    async def test_stop_during_a_read_suppresses_the_push(self) -> None:
        repo = _GatedRepo(self.store)
        self.watcher.task_repository = repo
        channel = _Channel()
        subscription = await self.watcher.subscribe("p1", channel)
        project_watcher = self.watcher.watcher_for("p1")
        recorded = project_watcher.last_mtime

        _write_tasks(self.store, [{"id": "v2"}])
        pending = asyncio.create_task(project_watcher.process_change())
        await self._until_reads(repo, 1)

        await self.watcher.unsubscribe(subscription)
        self.assertIs(project_watcher.state, WatcherState.IDLE)
        repo.gate.set()

        self.assertFalse(await pending)
        self.assertEqual(channel.of_type("tasks_updated"), [])
        self.assertEqual(project_watcher.last_mtime, recorded)
        self.assertIs(project_watcher.state, WatcherState.IDLE)

    async def test_release_project_disconnects_its_subscribers(self) -> None:
        removed = QueueChannel(maxsize=10)
        other = _Channel()
        await self.watcher.subscribe("p1", removed)
        await self.watcher.subscribe("p2", other)

        released = await self.watcher.release_project("p1", "Project removed: p1")

        self.assertEqual(released, 1)
        events = [event async for event in removed.stream()]
        self.assertEqual([e["type"] for e in events], ["connected", "error"])
        self.assertEqual(events[1]["error"], "Project removed: p1")
        self.assertEqual(self.watcher.subscribers("p1"), [])
        self.assertNotIn("p1", self.watcher.status()["projects"])
        self.assertIs(self.watcher.watcher_for("p2").state, WatcherState.WATCHING)
        self.assertEqual(other.of_type("error"), [])


class QueueChannelTests(unittest.IsolatedAsyncioTestCase):
    async def test_stream_yields_until_closed(self) -> None:
        channel = QueueChannel(maxsize=5)
        channel.send({"type": "connected"})
        channel.send({"type": "heartbeat"})
        channel.close()

        received = [event async for event in channel.stream()]

        self.assertEqual([e["type"] for e in received], ["connected", "heartbeat"])
        with self.assertRaises(RuntimeError):
            channel.send({"type": "heartbeat"})

    async def test_full_channel_raises(self) -> None:
        channel = QueueChannel(maxsize=1)
        channel.send({"type": "connected"})
        with self.assertRaises(asyncio.QueueFull):
            channel.send({"type": "heartbeat"})


if __name__ == "__main__":
    unittest.main()
