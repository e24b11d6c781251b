from __future__ import annotations

import logging
import random
from typing import Any, Dict, List, Optional

from .agent_runtime import AgentRuntime
from .approval_queue import ApprovalQueueManager
from .config import Config
from .drafting import (
    POST_TEMPLATE,
    REPLY_TEMPLATE,
    SHOULD_RESPOND_TEMPLATE,
    clean_generated_text,
    compose_context,
    parse_response_decision,
    truncate_to_complete_sentence,
)
from .ledger import detected_interaction_row
from .models import ActionKind, ApprovalRequest
from .scheduling import Clock, SystemClock
from .session import PlatformSession
from .store import DecisionStore


logger = logging.getLogger("tweetgate.autonomy")


def _format_tweet(tweet: Dict[str, Any]) -> str:
    return f"  ID: {tweet.get('id', '')}\n  From: {tweet.get('name', '')} (@{tweet.get('username', '')})\n  Text: {tweet.get('text', '')}"


def _format_timeline(agent_name: str, timeline: List[Dict[str, Any]]) -> str:
    lines = [f"# {agent_name}'s Home Timeline", ""]
    for tweet in timeline:
        lines.append(_format_tweet(tweet))
        lines.append("---")
    return "\n".join(lines)


class PostGenerator:
    def __init__(
        self,
        cfg: Config,
        runtime: AgentRuntime,
        session: PlatformSession,
        manager: ApprovalQueueManager,
        *,
        clock: Optional[Clock] = None,
        rng: Optional[random.Random] = None,
    ):
        self.cfg = cfg
        self.runtime = runtime
        self.session = session
        self.manager = manager
        self.clock = clock or SystemClock()
        self.rng = rng or random.Random()

    def _last_post_key(self) -> str:
        return f"twitter/{self.session.username}/lastPost"

    def _due(self) -> bool:
        last = self.runtime.cache_manager.get(self._last_post_key())
        if not isinstance(last, dict):
            return True
        elapsed = self.clock.now().timestamp() - float(last.get("timestamp") or 0)
        return elapsed >= self.cfg.post_interval_min_minutes * 60

    async def generate_once(self, force: bool = False) -> Optional[ApprovalRequest]:
        if not force and not self._due():
            logger.debug("Post generation skipped reason=interval_not_elapsed")
            return None
        try:
            timeline = await self.session.fetch_timeline(50)
        except Exception as e:
            logger.warning("Timeline fetch failed; generating without it error=%s", e)
            timeline = []
        topic = self.rng.choice(self.cfg.topics) if self.cfg.topics else ""
        state = await self.runtime.compose_state(
            {"text": ""},
            {"topic": topic, "timeline": _format_timeline(self.cfg.agent_name, timeline)},
        )
        raw = await self.runtime.generate_text(compose_context(POST_TEMPLATE, state), "small")
        content = truncate_to_complete_sentence(clean_generated_text(raw))
        if not content:
            logger.warning("Post generation returned empty text topic=%s", topic)
            return None
        request = await self.manager.enqueue(
            ActionKind.POST,
            content,
            None,
            {"topic": topic, "source": "post_generator"},
        )
        self.runtime.cache_manager.set(
            self._last_post_key(),
            {"timestamp": self.clock.now().timestamp(), "approval_id": request.id if request else ""},
        )
        return request


class MentionScanner:
    """Finds new mentions of the account and turns them into like/retweet/reply candidates."""

    def __init__(
        self,
        cfg: Config,
        runtime: AgentRuntime,
        session: PlatformSession,
        manager: ApprovalQueueManager,
        store: DecisionStore,
        *,
        clock: Optional[Clock] = None,
        rng: Optional[random.Random] = None,
    ):
        self.cfg = cfg
        self.runtime = runtime
        self.session = session
        self.manager = manager
        self.store = store
        self.clock = clock or SystemClock()
        self.rng = rng or random.Random()

    def _is_self(self, tweet: Dict[str, Any]) -> bool:
        if self.session.user_id and tweet.get("author_id") == self.session.user_id:
            return True
        return str(tweet.get("username") or "").lower() == self.session.username.lower()

    async def scan_once(self) -> List[ApprovalRequest]:
        query = f"@{self.session.username}"
        mentions = await self.session.fetch_mentions(self.cfg.interaction_count)
        unique: Dict[str, Dict[str, Any]] = {}
        for tweet in mentions:
            tweet_id = str(tweet.get("id") or "")
            if tweet_id.isdigit() and not self._is_self(tweet):
                unique[tweet_id] = tweet
        ordered = sorted(unique.values(), key=lambda t: int(t["id"]))
        last_checked = self.session.last_checked_tweet_id()

        created: List[ApprovalRequest] = []
        handled = 0
        # The cursor only moves over an unbroken run of handled mentions; the rest are retried next scan.
        cursor_held = False
        for tweet in ordered:
            tweet_id = int(tweet["id"])
            if last_checked is not None and tweet_id <= last_checked:
                continue
            if handled >= self.cfg.max_interactions_per_scan:
                cursor_held = True
                continue
            handled += 1
            interaction_type = "reply" if tweet.get("in_reply_to_id") else "mention"
            logger.info("New %s found tweet_id=%s author=@%s", interaction_type, tweet_id, tweet.get("username"))
            await self._record_detection(tweet, interaction_type, query)
            try:
                created.extend(await self._handle_tweet(tweet, interaction_type))
            except Exception as e:
                logger.exception("Interaction handling failed tweet_id=%s error=%s", tweet_id, e)
                cursor_held = True
                continue
            if not cursor_held:
                self.session.save_last_checked_tweet_id(tweet_id)
        logger.info(
            "Finished checking interactions found=%s queued=%s cursor=%s",
            len(ordered),
            len(created),
            self.session.last_checked_tweet_id(),
        )
        return created

    async def _record_detection(self, tweet: Dict[str, Any], interaction_type: str, query: str) -> None:
        tweet_id = str(tweet["id"])
        if self.session.interaction_logged(tweet_id):
            return
        try:
            await self.store.append_interaction_ledger(
                detected_interaction_row(
                    tweet,
                    interaction_type=interaction_type,
                    agent_name=self.cfg.agent_name,
                    agent_username=self.session.username,
                    search_query=query,
                    when=self.clock.now(),
                )
            )
        except Exception as e:
            logger.warning("Interaction ledger append failed tweet_id=%s error=%s", tweet_id, e)
            return
        self.session.mark_interaction_logged(tweet_id)

    async def _handle_tweet(self, tweet: Dict[str, Any], interaction_type: str) -> List[ApprovalRequest]:
        target = str(tweet["id"])
        context = {
            "author_username": tweet.get("username", ""),
            "author_name": tweet.get("name", ""),
            "tweet_text": tweet.get("text", ""),
            "conversation_id": tweet.get("conversation_id", ""),
            "permanent_url": tweet.get("permanent_url", ""),
            "interaction_type": interaction_type,
        }
        out: List[ApprovalRequest] = []
        if self.rng.random() < self.cfg.like_probability:
            liked = await self.manager.enqueue(ActionKind.LIKE, "", target, context)
            if liked:
                out.append(liked)
        if self.rng.random() < self.cfg.retweet_probability:
            shared = await self.manager.enqueue(ActionKind.RETWEET, "", target, context)
            if shared:
                out.append(shared)

        state = await self.runtime.compose_state(
            {"text": tweet.get("text", "")},
            {"currentPost": _format_tweet(tweet)},
        )
        decision = parse_response_decision(
            await self.runtime.generate_text(compose_context(SHOULD_RESPOND_TEMPLATE, state), "small")
        )
        if decision != "RESPOND":
            logger.info("Not responding tweet_id=%s decision=%s", target, decision)
            return out
        if self.rng.random() >= self.cfg.reply_probability:
            return out
        reply = clean_generated_text(
            await self.runtime.generate_text(compose_context(REPLY_TEMPLATE, state), "medium")
        )
        if not reply:
            return out
        kind = ActionKind.REPLY if interaction_type == "reply" else ActionKind.MENTION
        queued = await self.manager.enqueue(kind, reply, target, context)
        if queued:
            out.append(queued)
        return out
