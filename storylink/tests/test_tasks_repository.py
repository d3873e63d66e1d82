import json
import tempfile
import types
import unittest
from pathlib import Path

from storylink.db.factory import get_task_repository
from storylink.db.repositories.tasks import (
    MISSING_STORE_MESSAGE,
    JsonTaskRepository,
    SqliteTaskRepository,
)
from storylink.errors import NotFoundError, StoreUnavailableError
from storylink.models import Project


class _Projects:
    def __init__(self, *projects: Project) -> None:
        self._projects = {p.id: p for p in projects}

    def get_project(self, project_id: str):
        return self._projects.get(project_id)


class JsonTaskRepositoryTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.store = self.root / "tasks.json"
        self.repo = JsonTaskRepository(_Projects(Project(id="p1", name="P1", path=str(self.store))))

    def tearDown(self) -> None:
        self._tmp.cleanup()

    async def test_missing_store_returns_message(self) -> None:
        document = await self.repo.read_all("p1")
        self.assertEqual(document, {"tasks": [], "message": MISSING_STORE_MESSAGE})

    async def test_bare_array_is_accepted(self) -> None:
        self.store.write_text(json.dumps([{"id": "t1"}]), encoding="utf-8")
        document = await self.repo.read_all("p1")
        self.assertEqual(document["tasks"], [{"id": "t1"}])

    async def test_corrupt_store_raises_store_unavailable(self) -> None:
        self.store.write_text("{not json", encoding="utf-8")
        with self.assertRaises(StoreUnavailableError):
            await self.repo.read_all("p1")

    async def test_unknown_project_raises_not_found(self) -> None:
        with self.assertRaises(NotFoundError):
            await self.repo.read_all("nope")

    async def test_write_preserves_other_document_keys(self) -> None:
        self.store.write_text(json.dumps({"version": 2, "tasks": [{"id": "t1"}]}), encoding="utf-8")

        await self.repo.write_all("p1", [{"id": "t1", "storyId": "1.1", "custom": True}])

        saved = json.loads(self.store.read_text(encoding="utf-8"))
        self.assertEqual(saved["version"], 2)
        self.assertEqual(saved["tasks"], [{"id": "t1", "storyId": "1.1", "custom": True}])
        self.assertFalse((self.root / ".tasks.json.tmp").exists())


class SqliteTaskRepositoryTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.db_path = Path(self._tmp.name) / "tasks.db"
        projects = _Projects(
            Project(id="p1", name="P1", path="unused"),
            Project(id="p2", name="P2", path="unused"),
        )
        self.repo = SqliteTaskRepository(self.db_path, projects)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    async def test_missing_database_returns_message(self) -> None:
        document = await self.repo.read_all("p1")
        self.assertEqual(document["message"], MISSING_STORE_MESSAGE)

    async def test_round_trip_keeps_order_and_isolates_projects(self) -> None:
        await self.repo.write_all("p1", [{"id": "b", "name": "B"}, {"id": "a", "name": "A"}])
        await self.repo.write_all("p2", [{"id": "z"}])

        p1 = await self.repo.read_all("p1")
        p2 = await self.repo.read_all("p2")

        self.assertEqual([t["id"] for t in p1["tasks"]], ["b", "a"])
        self.assertEqual(p2["tasks"], [{"id": "z"}])
        self.assertEqual(self.repo.store_path("p1"), self.db_path)

    async def test_rewrite_replaces_project_rows(self) -> None:
        await self.repo.write_all("p1", [{"id": "a"}, {"id": "b"}])
        await self.repo.write_all("p1", [{"id": "b", "storyId": "1.1"}])

        document = await self.repo.read_all("p1")
        self.assertEqual(document["tasks"], [{"id": "b", "storyId": "1.1"}])

    async def test_duplicate_ids_keep_the_last_record(self) -> None:
        with self.assertLogs("storylink.db", level="WARNING"):
            await self.repo.write_all("p1", [
                {"id": "a", "name": "first"},
                {"id": "b"},
                {"id": "a", "name": "second"},
            ])

        document = await self.repo.read_all("p1")
        self.assertEqual(document["tasks"], [{"id": "a", "name": "second"}, {"id": "b"}])

    async def test_unwritable_database_raises_store_unavailable(self) -> None:
        self.db_path.mkdir()
        with self.assertRaises(StoreUnavailableError):
            await self.repo.write_all("p1", [{"id": "a"}])


class TaskRepositoryFactoryTests(unittest.TestCase):
    def test_backend_selection(self) -> None:
        projects = types.SimpleNamespace(get_project=lambda _pid: None)
        self.assertIsInstance(get_task_repository(projects, backend="json"), JsonTaskRepository)
        self.assertIsInstance(
            get_task_repository(projects, backend="sqlite", sqlite_path=Path("x.db")),
            SqliteTaskRepository,
        )
        with self.assertRaises(ValueError):
            get_task_repository(projects, backend="mongo")


if __name__ == "__main__":
    unittest.main()
