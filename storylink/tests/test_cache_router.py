import types
import unittest

from fastapi import HTTPException

from storylink.cache_manager import VIEW_HIERARCHY, VIEW_VALIDATION, CacheManager, make_cache_key
from storylink.models import ClearCacheRequest
from storylink.routers import cache as cache_router
from storylink.services.story_views import StoryViewService


class _FakeWatcher:
    def status(self):
        return {"running": True, "subscribers": 2, "projects": {"p1": {"state": "watching"}}}


class CacheRouterTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.cache = CacheManager()
        self.service = StoryViewService(
            types.SimpleNamespace(get_project=lambda _pid: None),
            task_repository=None,
            document_repository=None,
            cache=self.cache,
        )
        self.cache.set(make_cache_key(VIEW_HIERARCHY, "p1"), 1)
        self.cache.set(make_cache_key(VIEW_VALIDATION, "p1"), 2)
        self.cache.set(make_cache_key(VIEW_HIERARCHY, "p2"), 3)

    def _request(self, watcher=None):
        state = types.SimpleNamespace(story_views=self.service)
        if watcher is not None:
            state.change_watcher = watcher
        return types.SimpleNamespace(app=types.SimpleNamespace(state=state))

    async def test_clear_by_project(self) -> None:
        payload = await cache_router.clear_cache(self._request(), ClearCacheRequest(projectId="p1"))

        self.assertTrue(payload["success"])
        self.assertEqual(payload["cleared"]["count"], 2)
        self.assertEqual(payload["cleared"]["types"], [VIEW_HIERARCHY, VIEW_VALIDATION])
        self.assertEqual(len(self.cache), 1)

    async def test_clear_by_type(self) -> None:
        payload = await cache_router.clear_cache(self._request(), ClearCacheRequest(cacheType=VIEW_HIERARCHY))
        self.assertEqual(payload["cleared"]["count"], 2)
        self.assertEqual(payload["cleared"]["cacheType"], VIEW_HIERARCHY)

    async def test_all_flag_wins_over_filters(self) -> None:
        payload = await cache_router.clear_cache(
            self._request(), ClearCacheRequest(projectId="p1", all=True),
        )
        self.assertEqual(payload["cleared"]["count"], 3)
        self.assertEqual(len(self.cache), 0)

    async def test_empty_body_clears_everything(self) -> None:
        payload = await cache_router.clear_cache(self._request(), None)
        self.assertEqual(payload["cleared"]["count"], 3)

    async def test_status_includes_watcher(self) -> None:
        payload = await cache_router.get_cache_status(self._request(_FakeWatcher()))
        self.assertEqual(payload["totalEntries"], 3)
        self.assertEqual(payload["byProject"], {"p1": 2, "p2": 1})
        self.assertTrue(payload["watcher"]["running"])
        self.assertIn("timestamp", payload)

    async def test_status_without_watcher(self) -> None:
        payload = await cache_router.get_cache_status(self._request())
        self.assertFalse(payload["watcher"]["running"])

    async def test_missing_service_returns_503(self) -> None:
        request = types.SimpleNamespace(app=types.SimpleNamespace(state=types.SimpleNamespace()))
        with self.assertRaises(HTTPException) as ctx:
            await cache_router.get_cache_status(request)
        self.assertEqual(ctx.exception.status_code, 503)


if __name__ == "__main__":
    unittest.main()
