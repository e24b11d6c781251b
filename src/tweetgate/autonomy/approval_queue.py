from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Set, Union

from .cache import PHASE_EXECUTING, PHASE_SENT, PendingApprovalCache
from .drafting import normalize_str
from .errors import ExecutionError, InvalidTransitionError, NotFoundError, ValidationError
from .executor import ReconciliationExecutor
from .models import (
    ACTIVE_STATUSES,
    ActionKind,
    ApprovalRequest,
    ApprovalStatus,
    dedupe_key,
    new_approval_id,
)
from .scheduling import Clock, SystemClock
from .store import DecisionStore


logger = logging.getLogger("tweetgate.autonomy")

INTERRUPTED_REASON = "execution interrupted before completion; requeue to retry"


@dataclass
class DecisionOutcome:
    approval_id: str
    status: Optional[ApprovalStatus]
    changed: bool
    result_ref: Optional[str] = None
    reason: str = ""
    message: str = ""
    request: Optional[ApprovalRequest] = None


class ApprovalQueueManager:
    """Owns the approval lifecycle: enqueue, decision handling and reconciliation polling.

    The durable store is the source of truth. The fast-path cache only saves
    lookups and carries the ``executing``/``sent`` markers that stop a request
    from being executed twice after a crash or a failed store write.
    """

    def __init__(
        self,
        store: DecisionStore,
        executor: ReconciliationExecutor,
        cache: PendingApprovalCache,
        *,
        agent_name: str = "",
        agent_username: str = "",
        clock: Optional[Clock] = None,
        decision_window: timedelta = timedelta(hours=24),
    ):
        self.store = store
        self.executor = executor
        self.cache = cache
        self.agent_name = agent_name
        self.agent_username = agent_username
        self.clock = clock or SystemClock()
        self.decision_window = decision_window
        self._inflight: Set[str] = set()
        self._enqueue_lock = asyncio.Lock()

    async def enqueue(
        self,
        action_kind: Union[ActionKind, str],
        content: str = "",
        target_ref: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> Optional[ApprovalRequest]:
        """Record a candidate as Pending. Returns None when it is already queued or handled."""
        try:
            kind = action_kind if isinstance(action_kind, ActionKind) else ActionKind.parse(action_kind)
        except ValueError as e:
            raise ValidationError(str(e), [str(e)]) from e
        target = normalize_str(target_ref).strip() or None
        text = normalize_str(content)
        if kind.requires_target and not target:
            raise ValidationError(f"{kind.value} requires target_ref", ["target_ref: required"])
        if kind.publishes_text and not text.strip():
            raise ValidationError(f"{kind.value} requires content", ["content: required"])
        if not kind.requires_target:
            target = None

        # Serializes in-process producers; a second process can still race the store.
        async with self._enqueue_lock:
            key = dedupe_key(kind, target)
            if key:
                cached = self.cache.find_by_dedupe_key(key)
                if cached is not None and cached.status in ACTIVE_STATUSES:
                    logger.info("Skipping duplicate kind=%s target=%s existing=%s source=cache", kind.value, target, cached.id)
                    return None
                existing = await self.store.find_active(key)
                if existing is not None:
                    logger.info(
                        "Skipping duplicate kind=%s target=%s existing=%s status=%s",
                        kind.value,
                        target,
                        existing.id,
                        existing.status.value,
                    )
                    return None
            if kind.is_reply and target:
                replied = await self.store.find_sent_for_target(target)
                if replied is not None:
                    logger.info(
                        "Skipping duplicate kind=%s target=%s reason=already_replied existing=%s",
                        kind.value,
                        target,
                        replied.id,
                    )
                    return None

            now = self.clock.now()
            request = ApprovalRequest(
                id=new_approval_id(now_ms=int(now.timestamp() * 1000)),
                action_kind=kind,
                content=text,
                target_ref=target,
                context=dict(context or {}),
                status=ApprovalStatus.PENDING,
                created_at=now,
                agent_name=self.agent_name,
                agent_username=self.agent_username,
            )
            await self.store.append(request)

        try:
            self.cache.put(request)
        except Exception as e:
            logger.warning("Could not mirror approval into cache approval_id=%s error=%s", request.id, e)
        logger.info(
            "ENQUEUED approval_id=%s kind=%s target=%s chars=%s",
            request.id,
            kind.value,
            target,
            len(text),
        )
        return request

    async def handle_decision(
        self,
        approval_id: str,
        approved: bool,
        modified_content: Optional[str] = None,
        reason: Optional[str] = None,
        reviewer: str = "",
    ) -> DecisionOutcome:
        approval_id = normalize_str(approval_id).strip()
        if approval_id in self._inflight:
            logger.info("DECISION ignored approval_id=%s reason=already_in_progress", approval_id)
            return DecisionOutcome(
                approval_id=approval_id,
                status=None,
                changed=False,
                message=f"Approval {approval_id} is already being processed",
            )
        self._inflight.add(approval_id)
        try:
            request = self.cache.get(approval_id)
            if request is None:
                request = await self.store.get(approval_id)
            if request is None:
                logger.warning("DECISION for unknown approval_id=%s", approval_id)
                raise NotFoundError(approval_id)

            if request.status.terminal or self.cache.is_resolved(approval_id):
                logger.info(
                    "DECISION ignored approval_id=%s reason=already_terminal status=%s",
                    approval_id,
                    request.status.value,
                )
                return self._outcome(request, changed=False, message=f"Approval {approval_id} already resolved")

            logger.info(
                "DECISION approval_id=%s approved=%s modified=%s",
                approval_id,
                approved,
                bool(normalize_str(modified_content).strip()),
            )
            if request.status is ApprovalStatus.PENDING:
                request = await self._record_decision(request, approved, modified_content, reason, reviewer)
            return await self._reconcile(request)
        finally:
            self._inflight.discard(approval_id)

    async def _record_decision(
        self,
        request: ApprovalRequest,
        approved: bool,
        modified_content: Optional[str],
        reason: Optional[str],
        reviewer: str,
    ) -> ApprovalRequest:
        status = ApprovalStatus.APPROVED if approved else ApprovalStatus.REJECTED
        fields: Dict[str, Any] = {
            "reviewed_at": self.clock.now(),
            "reason": normalize_str(reason).strip(),
            "reviewer": reviewer,
        }
        if approved and normalize_str(modified_content).strip():
            fields["modified_content"] = normalize_str(modified_content)
        try:
            return await self.store.update_status(request.id, status, **fields)
        except InvalidTransitionError:
            # The reviewer already changed the row in the store; follow what it says.
            current = await self.store.get(request.id)
            if current is None:
                raise NotFoundError(request.id)
            logger.info(
                "DECISION superseded by store approval_id=%s store_status=%s",
                request.id,
                current.status.value,
            )
            return current

    async def _reconcile(self, request: ApprovalRequest) -> DecisionOutcome:
        if request.status is ApprovalStatus.REJECTED:
            self._purge(request.id, ApprovalStatus.REJECTED)
            logger.info("DECISION rejected approval_id=%s reason=%s", request.id, request.reason or "-")
            return self._outcome(request, changed=True, message=f"Successfully processed rejection for ID: {request.id}")

        if request.status is not ApprovalStatus.APPROVED:
            return self._outcome(request, changed=False, message=f"Approval {request.id} is {request.status.value}")

        phase = self.cache.phase(request.id)
        if phase == PHASE_SENT:
            cached = self.cache.get(request.id)
            result_ref = cached.result_ref if cached is not None else None
            if result_ref:
                sent = await self.executor.finish_sent(request, result_ref)
                self._purge(request.id, ApprovalStatus.SENT)
                logger.info("ACTION SENT recorded late approval_id=%s result_ref=%s", request.id, result_ref)
                return self._outcome(sent, changed=True, message=f"Recorded sent result for ID: {request.id}")
            phase = PHASE_EXECUTING
        if phase == PHASE_EXECUTING:
            failed = await self.store.update_status(
                request.id,
                ApprovalStatus.ERROR,
                reason=INTERRUPTED_REASON,
                reviewed_at=self.clock.now(),
            )
            self._purge(request.id, ApprovalStatus.ERROR)
            logger.error("ACTION ERROR approval_id=%s reason=%s", request.id, INTERRUPTED_REASON)
            return self._outcome(failed, changed=True, message=f"Approval {request.id} was interrupted")

        try:
            result = await self.executor.execute(request)
        except ExecutionError as e:
            self._purge(request.id, ApprovalStatus.ERROR)
            failed = request.transition(ApprovalStatus.ERROR, reason=str(e))
            return self._outcome(failed, changed=True, message=f"Execution failed for ID: {request.id}")
        self._purge(request.id, ApprovalStatus.SENT)
        return self._outcome(result.request, changed=True, message=f"Successfully processed approval for ID: {request.id}")

    def _purge(self, approval_id: str, status: ApprovalStatus) -> None:
        try:
            self.cache.purge(approval_id, status)
        except Exception as e:
            logger.warning("Could not purge approval from cache approval_id=%s error=%s", approval_id, e)

    @staticmethod
    def _outcome(request: ApprovalRequest, *, changed: bool, message: str) -> DecisionOutcome:
        return DecisionOutcome(
            approval_id=request.id,
            status=request.status,
            changed=changed,
            result_ref=request.result_ref,
            reason=request.reason,
            message=message,
            request=request,
        )

    async def poll_for_decisions(self, now: Optional[datetime] = None) -> List[ApprovalRequest]:
        """Reconcile every recent Approved/Rejected row in store order.

        A failure on one row is logged and the remaining rows are still processed.
        """
        rows = await self.store.list_resolved(self.decision_window, now or self.clock.now())
        resolved: List[ApprovalRequest] = []
        for row in rows:
            if row.id in self._inflight or self.cache.is_resolved(row.id):
                continue
            self._inflight.add(row.id)
            try:
                outcome = await self._reconcile(row)
            except Exception as e:
                logger.exception("Reconciliation failed approval_id=%s error=%s", row.id, e)
                continue
            finally:
                self._inflight.discard(row.id)
            if outcome.changed and outcome.request is not None:
                resolved.append(outcome.request)
        if resolved:
            logger.info("Decision poll resolved count=%s", len(resolved))
        else:
            logger.debug("Decision poll found nothing new rows=%s", len(rows))
        return resolved

    def restore(self) -> int:
        return self.cache.seed()

    def prune_stale(self, max_age: timedelta = timedelta(hours=24)) -> int:
        return self.cache.prune(max_age.total_seconds())
