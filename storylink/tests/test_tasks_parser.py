import unittest

from storylink.parsers.tasks import coerce_task, coerce_tasks


class TaskCoercionTests(unittest.TestCase):
    def test_status_spellings_are_normalized(self) -> None:
        self.assertEqual(coerce_task({"id": "a", "status": "Done"}).status, "completed")
        self.assertEqual(coerce_task({"id": "b", "status": "in-progress"}).status, "in_progress")
        self.assertEqual(coerce_task({"id": "c"}).status, "pending")
        self.assertEqual(coerce_task({"id": "d", "status": "blocked"}).status, "blocked")

    def test_name_falls_back_to_title_and_blank_story_is_none(self) -> None:
        task = coerce_task({"id": 7, "title": "Write docs", "storyId": "  ", "agent": "dev"})
        assert task is not None
        self.assertEqual(task.id, "7")
        self.assertEqual(task.name, "Write docs")
        self.assertIsNone(task.storyId)
        self.assertEqual(task.agent, "dev")
        self.assertEqual(task.priority, "medium")

    def test_records_without_id_are_skipped(self) -> None:
        with self.assertLogs("storylink.parser", level="WARNING"):
            tasks = coerce_tasks([{"id": "t1"}, {"name": "no id"}, "garbage", {"id": "t2"}])
        self.assertEqual([t.id for t in tasks], ["t1", "t2"])


if __name__ == "__main__":
    unittest.main()
