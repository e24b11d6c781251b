import tempfile
import unittest
from pathlib import Path

from fakes import FakeClock
from tweetgate.autonomy.cache import (
    PENDING_INDEX_KEY,
    PHASE_EXECUTING,
    PHASE_PENDING,
    PHASE_SENT,
    JsonFileCacheManager,
    MemoryCacheManager,
    PendingApprovalCache,
)
from tweetgate.autonomy.models import ActionKind, ApprovalRequest, ApprovalStatus


def _like(approval_id="1-a", target="T1"):
    return ApprovalRequest(id=approval_id, action_kind=ActionKind.LIKE, target_ref=target)


class CacheManagerTests(unittest.TestCase):
    def test_entries_expire(self):
        clock = FakeClock()
        cache = MemoryCacheManager(clock=clock)
        cache.set("short", 1, expires=10)
        cache.set("forever", 2)

        clock.advance(11)

        self.assertIsNone(cache.get("short"))
        self.assertEqual(cache.get("forever"), 2)

    def test_json_file_cache_survives_restart(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "nested" / "cache.json"
            first = JsonFileCacheManager(path, clock=FakeClock())
            first.set("twitter/gatebot/profile", {"id": "42"})
            first.set("gone", 1)
            first.delete("gone")

            second = JsonFileCacheManager(path, clock=FakeClock())

            self.assertEqual(second.get("twitter/gatebot/profile"), {"id": "42"})
            self.assertIsNone(second.get("gone"))
            self.assertFalse(path.with_name("cache.json.tmp").exists())


class PendingApprovalCacheTests(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = FakeClock()
        self.backing = MemoryCacheManager(clock=self.clock)
        self.cache = PendingApprovalCache(self.backing, clock=self.clock, resolved_ttl_seconds=3600)

    def test_phases(self):
        request = _like()
        self.cache.put(request)
        self.assertEqual(self.cache.phase(request.id), PHASE_PENDING)

        self.cache.mark_executing(request)
        self.assertEqual(self.cache.phase(request.id), PHASE_EXECUTING)

        sent = request.transition(ApprovalStatus.APPROVED).transition(ApprovalStatus.SENT, result_ref="T1")
        self.cache.mark_sent(sent)
        self.assertEqual(self.cache.phase(request.id), PHASE_SENT)
        self.assertEqual(self.cache.get(request.id).result_ref, "T1")

    def test_purge_leaves_expiring_tombstone(self):
        request = _like()
        self.cache.put(request)

        self.cache.purge(request.id, ApprovalStatus.REJECTED)

        self.assertIsNone(self.cache.get(request.id))
        self.assertEqual(self.backing.get(PENDING_INDEX_KEY), [])
        self.assertTrue(self.cache.is_resolved(request.id))
        self.clock.advance(3601)
        self.assertFalse(self.cache.is_resolved(request.id))

    def test_find_by_dedupe_key(self):
        self.cache.put(_like("1-a", "T1"))
        self.cache.put(_like("2-b", "T2"))

        self.assertEqual(self.cache.find_by_dedupe_key("like:T2").id, "2-b")
        self.assertIsNone(self.cache.find_by_dedupe_key("retweet:T2"))

    def test_seed_rebuilds_memory_and_drops_dangling_ids(self):
        self.cache.put(_like("1-a", "T1"))
        self.backing.set(PENDING_INDEX_KEY, ["1-a", "ghost"])

        fresh = PendingApprovalCache(self.backing, clock=self.clock)

        self.assertEqual(fresh.seed(), 1)
        self.assertEqual(fresh.pending_ids(), ["1-a"])
        self.assertEqual(self.backing.get(PENDING_INDEX_KEY), ["1-a"])

    def test_unreadable_entry_is_dropped(self):
        self.backing.set("pending_approvals/bad", {"payload": {"approval_id": ""}})

        self.assertIsNone(self.cache.get("bad"))


if __name__ == "__main__":
    unittest.main()
