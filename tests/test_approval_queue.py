import asyncio
import unittest

from fakes import FakeClock, build_pipeline
from tweetgate.autonomy.approval_queue import INTERRUPTED_REASON
from tweetgate.autonomy.errors import NotFoundError, StoreError, ValidationError
from tweetgate.autonomy.models import ActionKind, ApprovalStatus
from tweetgate.autonomy.store import InMemoryDecisionStore
from tweetgate.twitter_client import TwitterAPIError


class _FlakySentStore(InMemoryDecisionStore):
    """Fails the first ``fail_sent_writes`` writes of a Sent row."""

    def __init__(self, fail_sent_writes: int = 1):
        super().__init__()
        self.fail_sent_writes = fail_sent_writes

    async def _write(self, request):
        if request.status is ApprovalStatus.SENT and self.fail_sent_writes > 0:
            self.fail_sent_writes -= 1
            raise StoreError("sheet unavailable")
        await super()._write(request)


class EnqueueTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.p = build_pipeline()
        await self.p.session.init()

    async def test_second_enqueue_for_same_target_is_skipped(self) -> None:
        first = await self.p.manager.enqueue(ActionKind.LIKE, "", "T1", {})
        second = await self.p.manager.enqueue(ActionKind.LIKE, "", "T1", {})

        self.assertIsNotNone(first)
        self.assertIsNone(second)
        self.assertEqual(len(self.p.store.rows), 1)

    async def test_duplicate_is_detected_from_store_when_cache_is_cold(self) -> None:
        first = await self.p.manager.enqueue(ActionKind.RETWEET, "", "T9", {})
        self.p.pending._entries.clear()

        second = await self.p.manager.enqueue(ActionKind.RETWEET, "", "T9", {})

        self.assertIsNotNone(first)
        self.assertIsNone(second)

    async def test_same_target_different_kind_is_not_a_duplicate(self) -> None:
        liked = await self.p.manager.enqueue(ActionKind.LIKE, "", "T1", {})
        shared = await self.p.manager.enqueue(ActionKind.RETWEET, "", "T1", {})

        self.assertIsNotNone(liked)
        self.assertIsNotNone(shared)

    async def test_posts_are_never_deduplicated(self) -> None:
        first = await self.p.manager.enqueue(ActionKind.POST, "same words", None, {})
        second = await self.p.manager.enqueue(ActionKind.POST, "same words", None, {})

        self.assertIsNotNone(first)
        self.assertIsNotNone(second)
        self.assertNotEqual(first.id, second.id)

    async def test_rejected_target_can_be_queued_again(self) -> None:
        first = await self.p.manager.enqueue(ActionKind.LIKE, "", "T5", {})
        await self.p.manager.handle_decision(first.id, False, reason="not now")

        again = await self.p.manager.enqueue(ActionKind.LIKE, "", "T5", {})

        self.assertIsNotNone(again)

    async def test_mention_skipped_when_target_already_replied(self) -> None:
        reply = await self.p.manager.enqueue(ActionKind.REPLY, "thanks!", "T123", {"author_username": "alice"})
        await self.p.manager.handle_decision(reply.id, True)
        self.assertEqual(self.p.store.record(reply.id)["status"], "sent")

        mention = await self.p.manager.enqueue(ActionKind.MENTION, "hello again", "T123", {})

        self.assertIsNone(mention)

    async def test_concurrent_enqueue_for_same_target_creates_one_row(self) -> None:
        results = await asyncio.gather(
            self.p.manager.enqueue(ActionKind.LIKE, "", "T77", {}),
            self.p.manager.enqueue(ActionKind.LIKE, "", "T77", {}),
        )

        self.assertEqual(sum(1 for r in results if r is not None), 1)
        self.assertEqual(len(self.p.store.rows), 1)

    async def test_enqueue_validates_input(self) -> None:
        with self.assertRaises(ValidationError):
            await self.p.manager.enqueue(ActionKind.LIKE, "", None, {})
        with self.assertRaises(ValidationError):
            await self.p.manager.enqueue(ActionKind.POST, "   ", None, {})
        with self.assertRaises(ValidationError):
            await self.p.manager.enqueue("bookmark", "x", "T1", {})
        self.assertEqual(self.p.store.rows, [])

    async def test_enqueue_writes_pending_row_and_mirrors_cache(self) -> None:
        request = await self.p.manager.enqueue("tweet", "hello world", None, {"topic": "agents"})

        record = self.p.store.record(request.id)
        self.assertEqual(record["status"], "pending")
        self.assertEqual(record["content_type"], "post")
        self.assertEqual(record["agent_username"], "gatebot")
        self.assertEqual(record["tweet_id"], "")
        self.assertIsNotNone(self.p.pending.get(request.id))


class DecisionTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.p = build_pipeline()
        await self.p.session.init()

    async def test_rejection_records_reason_and_sends_nothing(self) -> None:
        request = await self.p.manager.enqueue(ActionKind.POST, "hot take", None, {})

        outcome = await self.p.manager.handle_decision(request.id, False, reason="too spicy")

        record = self.p.store.record(request.id)
        self.assertEqual(record["status"], "rejected")
        self.assertEqual(record["reason"], "too spicy")
        self.assertEqual(record["tweet_id"], "")
        self.assertEqual(self.p.client.create_calls, [])
        self.assertEqual(outcome.status, ApprovalStatus.REJECTED)
        self.assertIsNone(self.p.pending.get(request.id))
        self.assertTrue(self.p.pending.is_resolved(request.id))

    async def test_modified_content_wins_over_draft(self) -> None:
        request = await self.p.manager.enqueue(ActionKind.POST, "A", None, {})

        await self.p.manager.handle_decision(request.id, True, modified_content="B")

        self.assertEqual([c["text"] for c in self.p.client.create_calls], ["B"])
        record = self.p.store.record(request.id)
        self.assertEqual(record["modified_content"], "B")
        self.assertEqual(record["content"], "A")

    async def test_second_approval_is_a_noop(self) -> None:
        request = await self.p.manager.enqueue(ActionKind.POST, "ship it", None, {})

        first = await self.p.manager.handle_decision(request.id, True)
        second = await self.p.manager.handle_decision(request.id, True)

        self.assertTrue(first.changed)
        self.assertEqual(first.status, ApprovalStatus.SENT)
        self.assertFalse(second.changed)
        self.assertEqual(len(self.p.client.create_calls), 1)

    async def test_unknown_id_raises_not_found_without_writes(self) -> None:
        await self.p.manager.enqueue(ActionKind.POST, "something", None, {})
        writes_before = self.p.store.writes

        with self.assertRaises(NotFoundError):
            await self.p.manager.handle_decision("nonexistent-id", True)

        self.assertEqual(self.p.store.writes, writes_before)
        self.assertEqual(self.p.client.create_calls, [])

    async def test_reviewer_rejection_in_store_beats_late_approval(self) -> None:
        request = await self.p.manager.enqueue(ActionKind.POST, "maybe", None, {})
        self.p.store.apply_review(request.id, False, reason="no")

        outcome = await self.p.manager.handle_decision(request.id, True)

        self.assertEqual(outcome.status, ApprovalStatus.REJECTED)
        self.assertEqual(self.p.client.create_calls, [])
        self.assertEqual(self.p.store.record(request.id)["status"], "rejected")

    async def test_reply_gets_author_prefix_and_targets_tweet(self) -> None:
        request = await self.p.manager.enqueue(
            ActionKind.REPLY, "good point", "555", {"author_username": "alice"}
        )

        await self.p.manager.handle_decision(request.id, True)

        self.assertEqual(self.p.client.create_calls, [{"text": "@alice good point", "in_reply_to": "555"}])
        self.assertEqual(len(self.p.store.interactions_ledger), 1)
        self.assertEqual(self.p.store.posts_ledger, [])


class PollTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.p = build_pipeline()
        await self.p.session.init()

    async def test_round_trip_pending_to_sent_through_poll(self) -> None:
        request = await self.p.manager.enqueue(ActionKind.POST, "hello world", None, {})
        self.assertEqual(self.p.store.record(request.id)["status"], "pending")
        self.p.store.apply_review(request.id, True, reviewer="sam")

        resolved = await self.p.manager.poll_for_decisions()

        record = self.p.store.record(request.id)
        self.assertEqual(record["status"], "sent")
        self.assertTrue(record["tweet_id"])
        self.assertEqual([r.id for r in resolved], [request.id])
        self.assertEqual(len(self.p.store.posts_ledger), 1)
        self.assertEqual(self.p.store.posts_ledger[0][0], record["tweet_id"])

    async def test_poll_does_not_reprocess_resolved_rows(self) -> None:
        request = await self.p.manager.enqueue(ActionKind.POST, "once", None, {})
        self.p.store.apply_review(request.id, True)

        await self.p.manager.poll_for_decisions()
        self.p.store.rows[0][7] = "approved"
        again = await self.p.manager.poll_for_decisions()

        self.assertEqual(again, [])
        self.assertEqual(len(self.p.client.create_calls), 1)

    async def test_failure_on_one_row_does_not_stop_the_batch(self) -> None:
        x = await self.p.manager.enqueue(ActionKind.POST, "first", None, {})
        y = await self.p.manager.enqueue(ActionKind.POST, "second", None, {})
        self.p.store.apply_review(x.id, True)
        self.p.store.apply_review(y.id, True)
        self.p.client.create_error = TwitterAPIError(500, "boom")
        self.p.client.fail_create_at = 0

        resolved = await self.p.manager.poll_for_decisions()

        x_row = self.p.store.record(x.id)
        y_row = self.p.store.record(y.id)
        self.assertEqual(x_row["status"], "error")
        self.assertIn("boom", x_row["reason"])
        self.assertEqual(x_row["tweet_id"], "")
        self.assertEqual(y_row["status"], "sent")
        self.assertTrue(y_row["tweet_id"])
        self.assertEqual({r.id: r.status for r in resolved}, {x.id: ApprovalStatus.ERROR, y.id: ApprovalStatus.SENT})

    async def test_errored_row_is_not_retried_by_later_polls(self) -> None:
        request = await self.p.manager.enqueue(ActionKind.POST, "fails", None, {})
        self.p.store.apply_review(request.id, True)
        self.p.client.create_error = TwitterAPIError(500, "down")
        await self.p.manager.poll_for_decisions()
        self.p.client.create_error = None

        await self.p.manager.poll_for_decisions()

        self.assertEqual(len(self.p.client.create_calls), 1)
        self.assertEqual(self.p.store.record(request.id)["status"], "error")

    async def test_rows_outside_window_are_ignored(self) -> None:
        request = await self.p.manager.enqueue(ActionKind.POST, "old news", None, {})
        self.p.clock.advance(25 * 3600)
        self.p.store.apply_review(request.id, True)

        resolved = await self.p.manager.poll_for_decisions()

        self.assertEqual(resolved, [])
        self.assertEqual(self.p.client.create_calls, [])

    async def test_interrupted_execution_is_marked_error(self) -> None:
        request = await self.p.manager.enqueue(ActionKind.POST, "half sent", None, {})
        self.p.store.apply_review(request.id, True)
        self.p.pending.mark_executing(request)

        await self.p.manager.poll_for_decisions()

        record = self.p.store.record(request.id)
        self.assertEqual(record["status"], "error")
        self.assertEqual(record["reason"], INTERRUPTED_REASON)
        self.assertEqual(self.p.client.create_calls, [])

    async def test_sent_result_is_recorded_late_without_resending(self) -> None:
        p = build_pipeline(store=_FlakySentStore(fail_sent_writes=1))
        await p.session.init()
        request = await p.manager.enqueue(ActionKind.POST, "only once", None, {})
        p.store.apply_review(request.id, True)

        first = await p.manager.poll_for_decisions()
        self.assertEqual(first, [])
        self.assertEqual(p.store.record(request.id)["status"], "approved")

        second = await p.manager.poll_for_decisions()

        record = p.store.record(request.id)
        self.assertEqual(record["status"], "sent")
        self.assertEqual(record["tweet_id"], "9001")
        self.assertEqual(len(p.client.create_calls), 1)
        self.assertEqual([r.id for r in second], [request.id])

    async def test_restart_restores_pending_entries_from_durable_cache(self) -> None:
        request = await self.p.manager.enqueue(ActionKind.LIKE, "", "T3", {})
        restarted = build_pipeline(
            store=self.p.store,
            cache_manager=self.p.cache_manager,
            clock=self.p.clock,
            client=self.p.client,
        )
        await restarted.session.init()

        self.assertEqual(restarted.manager.restore(), 1)
        self.assertIsNotNone(restarted.pending.get(request.id))
        self.assertIsNone(await restarted.manager.enqueue(ActionKind.LIKE, "", "T3", {}))

    async def test_prune_drops_old_memory_entries(self) -> None:
        await self.p.manager.enqueue(ActionKind.LIKE, "", "T8", {})
        self.p.clock.advance(2 * 24 * 3600)

        self.assertEqual(self.p.manager.prune_stale(), 1)
        self.assertEqual(self.p.pending.pending_ids(), [])


class DryRunTests(unittest.IsolatedAsyncioTestCase):
    async def test_dry_run_marks_sent_without_platform_call(self) -> None:
        p = build_pipeline(dry_run=True, clock=FakeClock())
        await p.session.init()
        request = await p.manager.enqueue(ActionKind.POST, "rehearsal", None, {})

        outcome = await p.manager.handle_decision(request.id, True)

        self.assertEqual(outcome.result_ref, f"dry-run-{request.id}")
        self.assertEqual(p.client.create_calls, [])
        self.assertEqual(p.store.record(request.id)["status"], "sent")


if __name__ == "__main__":
    unittest.main()
