from __future__ import annotations

import asyncio
import logging
import random
import signal
from datetime import timedelta
from typing import Any, Dict, List, Optional

from ..twitter_client import TwitterAuthError
from .agent_runtime import AgentRuntime, OpenAIAgentRuntime
from .approval_queue import ApprovalQueueManager
from .cache import CacheManager, JsonFileCacheManager, PendingApprovalCache
from .config import Config, load_config
from .errors import StoreError
from .executor import ReconciliationExecutor
from .generators import MentionScanner, PostGenerator
from .logging_utils import setup_logging
from .scheduling import BackoffPolicy, Clock, PeriodicTask, SystemClock, retry_async
from .session import PlatformSession
from .sheets_store import GoogleSheetsDecisionStore
from .store import DecisionStore, InMemoryDecisionStore
from .ui import print_runtime_banner
from .webhook import build_webhook_server, create_webhook_app


logger = logging.getLogger("tweetgate.autonomy")

SESSION_INIT_POLICY = BackoffPolicy(attempts=5, base_delay=2.0, multiplier=2.0, max_delay=30.0)
PRUNE_INTERVAL_SECONDS = 3600


def build_store(cfg: Config) -> DecisionStore:
    if cfg.approval_store == "memory":
        logger.warning("Using in-memory approval store; decisions are lost on restart")
        return InMemoryDecisionStore()
    return GoogleSheetsDecisionStore.from_config(cfg)


class AgentService:
    """Composition root: one session, one store, one queue manager, and the timers that drive them."""

    def __init__(
        self,
        cfg: Config,
        *,
        store: Optional[DecisionStore] = None,
        session: Optional[PlatformSession] = None,
        runtime: Optional[AgentRuntime] = None,
        cache_manager: Optional[CacheManager] = None,
        clock: Optional[Clock] = None,
        rng: Optional[random.Random] = None,
    ):
        self.cfg = cfg
        self.clock = clock or SystemClock()
        self.rng = rng or random.Random()
        self.cache_manager = cache_manager or JsonFileCacheManager(cfg.cache_path, clock=self.clock)
        self.store = store or build_store(cfg)
        self.session = session or PlatformSession(cfg, self.cache_manager, clock=self.clock)
        self.runtime = runtime or OpenAIAgentRuntime(cfg, self.cache_manager)

        window = timedelta(hours=cfg.decision_window_hours)
        self.pending_cache = PendingApprovalCache(
            self.cache_manager,
            clock=self.clock,
            resolved_ttl_seconds=window.total_seconds(),
        )
        self.executor = ReconciliationExecutor(
            self.store,
            self.session,
            cache=self.pending_cache,
            clock=self.clock,
            resolve_policy=BackoffPolicy.fixed(
                attempts=cfg.executor_resolve_attempts,
                delay=cfg.executor_resolve_delay_seconds,
            ),
            dry_run=cfg.dry_run,
            mention_prefix=cfg.reply_mention_prefix,
        )
        self.manager = ApprovalQueueManager(
            self.store,
            self.executor,
            self.pending_cache,
            agent_name=cfg.agent_name,
            agent_username=cfg.twitter_username,
            clock=self.clock,
            decision_window=window,
        )
        self.post_generator = PostGenerator(
            cfg, self.runtime, self.session, self.manager, clock=self.clock, rng=self.rng
        )
        self.mention_scanner = MentionScanner(
            cfg, self.runtime, self.session, self.manager, self.store, clock=self.clock, rng=self.rng
        )
        self.tasks: List[PeriodicTask] = []
        self._handles: List[asyncio.Task] = []
        self._webhook_server: Any = None
        self._webhook_task: Optional[asyncio.Task] = None

    async def init_session(self) -> Dict[str, Any]:
        profile = await retry_async(
            self.session.init,
            SESSION_INIT_POLICY,
            self.clock,
            label="session init",
            give_up_on=(TwitterAuthError,),
        )
        # Usernames come from the platform once logged in.
        self.manager.agent_username = self.session.username
        return profile

    def _build_tasks(self) -> List[PeriodicTask]:
        cfg = self.cfg
        return [
            PeriodicTask(
                "posts",
                self.post_generator.generate_once,
                cfg.post_interval_min_minutes * 60,
                cfg.post_interval_max_minutes * 60,
                clock=self.clock,
                rng=self.rng,
                run_immediately=cfg.post_immediately,
            ),
            PeriodicTask(
                "mentions",
                self.mention_scanner.scan_once,
                cfg.interaction_interval_min_minutes * 60,
                cfg.interaction_interval_max_minutes * 60,
                clock=self.clock,
                rng=self.rng,
                run_immediately=True,
            ),
            PeriodicTask(
                "decisions",
                self.manager.poll_for_decisions,
                cfg.poll_seconds_min,
                cfg.poll_seconds_max,
                clock=self.clock,
                rng=self.rng,
                run_immediately=True,
            ),
            PeriodicTask(
                "prune",
                lambda: self.manager.prune_stale(timedelta(hours=cfg.decision_window_hours)),
                PRUNE_INTERVAL_SECONDS,
                clock=self.clock,
                rng=self.rng,
            ),
        ]

    async def start(self) -> None:
        await self.init_session()
        self.manager.restore()
        self.tasks = self._build_tasks()
        self._handles = [task.start() for task in self.tasks]
        if self.cfg.webhook_enabled:
            self._webhook_server = build_webhook_server(
                create_webhook_app(self.manager),
                self.cfg.webhook_host,
                self.cfg.webhook_port,
            )
            self._webhook_task = asyncio.ensure_future(self._webhook_server.serve())
            logger.info("Webhook listening host=%s port=%s", self.cfg.webhook_host, self.cfg.webhook_port)
        logger.info(
            "Agent started username=%s dry_run=%s store=%s tasks=%s",
            self.session.username,
            self.cfg.dry_run,
            self.cfg.approval_store,
            ",".join(task.name for task in self.tasks),
        )

    async def stop(self) -> None:
        for task in self.tasks:
            task.stop()
        pending: List[asyncio.Task] = list(self._handles)
        if self._webhook_server is not None:
            self._webhook_server.should_exit = True
        if self._webhook_task is not None:
            pending.append(self._webhook_task)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info("Agent stopped")

    async def run_once(self) -> Dict[str, Any]:
        """One pass of every loop, without timers. Used by ``tweetgate run --once``."""
        if not self.session.ready:
            await self.init_session()
            self.manager.restore()
        post = await self.post_generator.generate_once(force=True)
        queued = await self.mention_scanner.scan_once()
        resolved = await self.manager.poll_for_decisions()
        summary = {
            "post_approval_id": post.id if post else None,
            "interactions_queued": [request.id for request in queued],
            "resolved": [{"approval_id": r.id, "status": r.status.value} for r in resolved],
        }
        logger.info(
            "Single pass done post=%s interactions=%s resolved=%s",
            summary["post_approval_id"],
            len(queued),
            len(resolved),
        )
        return summary

    async def run_until_stopped(self, stop_event: asyncio.Event) -> None:
        await self.start()
        try:
            await stop_event.wait()
        finally:
            await self.stop()


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            logger.debug("Signal handlers unavailable signal=%s", sig)


async def serve(cfg: Config) -> None:
    service = AgentService(cfg)
    stop_event = asyncio.Event()
    _install_signal_handlers(stop_event)
    await service.run_until_stopped(stop_event)


def run_loop() -> None:
    cfg = load_config()
    logger = setup_logging(cfg)
    print_runtime_banner(cfg)
    logger.info(
        (
            "Autonomy loop starting username=%s dry_run=%s store=%s poll_seconds=%s-%s "
            "post_interval_minutes=%s-%s interaction_interval_minutes=%s-%s webhook=%s cache_path=%s"
        ),
        cfg.twitter_username,
        cfg.dry_run,
        cfg.approval_store,
        cfg.poll_seconds_min,
        cfg.poll_seconds_max,
        cfg.post_interval_min_minutes,
        cfg.post_interval_max_minutes,
        cfg.interaction_interval_min_minutes,
        cfg.interaction_interval_max_minutes,
        cfg.webhook_enabled,
        cfg.cache_path,
    )
    if cfg.log_path:
        logger.info("File logging enabled path=%s", cfg.log_path)
    try:
        asyncio.run(serve(cfg))
    except TwitterAuthError as e:
        logger.error("Twitter authentication failed error=%s", e)
        raise SystemExit(str(e))
    except StoreError as e:
        logger.error("Approval store unavailable error=%s", e)
        raise SystemExit(str(e))


if __name__ == "__main__":
    run_loop()
