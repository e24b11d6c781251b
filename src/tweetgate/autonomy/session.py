from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

from ..twitter_client import TwitterAuthError, TwitterClient, TwitterRateLimitError, tweet_url
from .cache import CacheManager
from .config import Config
from .errors import ExecutorUnavailableError
from .scheduling import BackoffPolicy, Clock, RequestQueue, SystemClock, retry_async


logger = logging.getLogger("tweetgate.autonomy")

LOGIN_POLICY = BackoffPolicy.fixed(attempts=3, delay=5.0)
TIMELINE_CACHE_SECONDS = 10
LOGGED_INTERACTION_SECONDS = 7 * 24 * 3600
# Writes are not idempotent: only a 429 proves the platform did not accept the request.
WRITE_RETRY_ON = (TwitterRateLimitError,)


class PlatformSession:
    """The one platform session of the process.

    Built once by the composition root and handed to every component that
    talks to Twitter. All reads and writes go through a single ``RequestQueue``.
    """

    def __init__(
        self,
        cfg: Config,
        cache: CacheManager,
        *,
        client: Optional[TwitterClient] = None,
        client_factory: Callable[[], TwitterClient] = TwitterClient,
        queue: Optional[RequestQueue] = None,
        clock: Optional[Clock] = None,
    ):
        self.cfg = cfg
        self.cache = cache
        self.clock = clock or SystemClock()
        self._client = client
        self._client_factory = client_factory
        self.queue = queue or RequestQueue(
            delay_min=cfg.request_delay_min_seconds,
            delay_max=cfg.request_delay_max_seconds,
            backoff=BackoffPolicy(
                attempts=cfg.request_max_attempts,
                base_delay=cfg.request_backoff_base_seconds,
                multiplier=2.0,
                max_delay=60.0,
            ),
            clock=self.clock,
            non_retryable=(TwitterAuthError, ValueError),
        )
        self.profile: Dict[str, Any] = {}
        self.offline = False

    @property
    def ready(self) -> bool:
        return bool(self.profile.get("id"))

    @property
    def username(self) -> str:
        return str(self.profile.get("username") or self.cfg.twitter_username or "")

    @property
    def user_id(self) -> str:
        return str(self.profile.get("id") or "")

    def _key(self, suffix: str) -> str:
        return f"twitter/{self.username or 'unknown'}/{suffix}"

    def handle(self) -> "PlatformSession":
        if not self.ready:
            raise ExecutorUnavailableError("Platform session is not initialized")
        return self

    def _require_client(self) -> TwitterClient:
        if self._client is None:
            raise ExecutorUnavailableError("Platform client is not available")
        return self._client

    async def init(self) -> Dict[str, Any]:
        if self.ready:
            return self.profile
        if self._client is None:
            try:
                self._client = self._client_factory()
            except TwitterAuthError as e:
                if not self.cfg.dry_run:
                    raise
                logger.warning("No Twitter credentials; dry run continues offline error=%s", e)
                self.offline = True
                self.profile = {
                    "id": "offline",
                    "username": self.cfg.twitter_username,
                    "name": self.cfg.agent_name,
                }
                return self.profile

        client = self._client

        async def _login() -> Dict[str, Any]:
            return await self.queue.submit("login", client.get_me)

        me = await retry_async(
            _login,
            LOGIN_POLICY,
            self.clock,
            label="login",
            give_up_on=(TwitterAuthError,),
        )
        self.profile = {
            "id": str(me.get("id") or ""),
            "username": str(me.get("username") or self.cfg.twitter_username),
            "name": str(me.get("name") or self.cfg.agent_name),
        }
        self.cache.set(self._key("profile"), self.profile)
        logger.info("Twitter session ready username=%s user_id=%s", self.username, self.user_id)
        return self.profile

    async def fetch_timeline(self, count: int = 50) -> List[Dict[str, Any]]:
        cached = self.cache.get(self._key("timeline"))
        if isinstance(cached, list):
            return cached
        if self.offline:
            return []
        client = self._require_client()
        timeline = await self.queue.submit("timeline", client.get_home_timeline, self.user_id, count)
        self.cache.set(self._key("timeline"), timeline, expires=TIMELINE_CACHE_SECONDS)
        return timeline

    async def fetch_mentions(self, count: int = 20, since_id: Optional[str] = None) -> List[Dict[str, Any]]:
        if self.offline:
            return []
        client = self._require_client()
        return await self.queue.submit("mentions", client.search_recent, f"@{self.username}", count, since_id)

    def last_checked_tweet_id(self) -> Optional[int]:
        raw = self.cache.get(self._key("latest_checked_tweet_id"))
        try:
            return int(raw) if raw is not None else None
        except (TypeError, ValueError):
            return None

    def save_last_checked_tweet_id(self, tweet_id: int) -> None:
        self.cache.set(self._key("latest_checked_tweet_id"), int(tweet_id))

    def interaction_logged(self, tweet_id: str) -> bool:
        return bool(self.cache.get(self._key(f"logged_interactions/{tweet_id}")))

    def mark_interaction_logged(self, tweet_id: str) -> None:
        self.cache.set(self._key(f"logged_interactions/{tweet_id}"), True, expires=LOGGED_INTERACTION_SECONDS)

    async def send_post(self, text: str, in_reply_to: Optional[str] = None) -> Dict[str, Any]:
        client = self._require_client()
        tweet = await self.queue.submit(
            "create_tweet", client.create_tweet, text, in_reply_to, retry_on=WRITE_RETRY_ON
        )
        tweet_id = str(tweet.get("id") or "")
        return {
            "id": tweet_id,
            "conversation_id": str(tweet.get("conversation_id") or ""),
            "permanent_url": tweet_url(self.username, tweet_id),
        }

    async def like(self, tweet_id: str) -> Dict[str, Any]:
        client = self._require_client()
        return await self.queue.submit("like", client.like_tweet, self.user_id, tweet_id)

    async def retweet(self, tweet_id: str) -> Dict[str, Any]:
        client = self._require_client()
        return await self.queue.submit("retweet", client.retweet, self.user_id, tweet_id)

    async def send_dm(self, participant_id: str, text: str) -> Dict[str, Any]:
        client = self._require_client()
        event = await self.queue.submit(
            "send_dm", client.send_direct_message, participant_id, text, retry_on=WRITE_RETRY_ON
        )
        return {
            "id": str(event.get("dm_event_id") or ""),
            "conversation_id": str(event.get("dm_conversation_id") or ""),
        }
