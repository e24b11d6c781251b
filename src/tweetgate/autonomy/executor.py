from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .cache import PendingApprovalCache
from .drafting import MAX_TWEET_LENGTH, normalize_str, split_tweet_content, unwrap_structured_content
from .errors import ExecutionError, ExecutorUnavailableError, StoreError
from .ledger import interaction_ledger_row, post_ledger_row
from .models import ActionKind, ApprovalRequest, ApprovalStatus
from .scheduling import BackoffPolicy, Clock, SystemClock, retry_async
from .session import PlatformSession
from .store import DecisionStore
from .ui import print_error_banner, print_success_banner


logger = logging.getLogger("tweetgate.autonomy")


@dataclass
class ExecutionResult:
    approval_id: str
    result_ref: str
    published_text: str
    request: ApprovalRequest
    thread_ids: List[str] = field(default_factory=list)


class _PartialThreadError(Exception):
    def __init__(self, sent_ids: List[str], total: int, cause: BaseException):
        super().__init__(f"thread incomplete: {len(sent_ids)}/{total} parts sent: {cause}")
        self.sent_ids = sent_ids


def prepare_content(request: ApprovalRequest, mention_prefix: bool = True) -> str:
    """Resolve the text to publish: reviewer edit first, fence unwrapped, author mentioned."""
    raw = request.resolved_content()
    try:
        text = unwrap_structured_content(raw)
    except ValueError as e:
        logger.warning("Could not unwrap structured content approval_id=%s error=%s; publishing raw", request.id, e)
        text = raw
    text = text.strip()
    if mention_prefix and request.action_kind.is_reply and text:
        author = normalize_str((request.context or {}).get("author_username")).strip().lstrip("@")
        if author and f"@{author.lower()}" not in text.lower():
            text = f"@{author} {text}"
    return text


class ReconciliationExecutor:
    """Turns an Approved request into a platform side effect and records the outcome."""

    def __init__(
        self,
        store: DecisionStore,
        session: PlatformSession,
        *,
        cache: Optional[PendingApprovalCache] = None,
        clock: Optional[Clock] = None,
        resolve_policy: Optional[BackoffPolicy] = None,
        dry_run: bool = False,
        mention_prefix: bool = True,
        show_banner: bool = True,
    ):
        self.store = store
        self.session = session
        self.cache = cache
        self.clock = clock or SystemClock()
        self.resolve_policy = resolve_policy or BackoffPolicy.fixed(attempts=3, delay=2.0)
        self.dry_run = dry_run
        self.mention_prefix = mention_prefix
        self.show_banner = show_banner
        self._dispatch: Dict[ActionKind, Callable[[PlatformSession, ApprovalRequest, str], Awaitable[Dict[str, Any]]]] = {
            ActionKind.POST: self._send_post,
            ActionKind.REPLY: self._send_reply,
            ActionKind.MENTION: self._send_reply,
            ActionKind.DIRECT_MESSAGE: self._send_dm,
            ActionKind.LIKE: self._like,
            ActionKind.RETWEET: self._retweet,
        }
        missing = set(ActionKind) - set(self._dispatch)
        if missing:
            raise TypeError(f"No execution path for action kinds: {sorted(k.value for k in missing)}")

    async def _resolve_handle(self) -> PlatformSession:
        async def _lookup() -> PlatformSession:
            return self.session.handle()

        try:
            return await retry_async(
                _lookup,
                self.resolve_policy,
                self.clock,
                label="executor handle",
                retry_on=(ExecutorUnavailableError,),
            )
        except ExecutorUnavailableError as e:
            raise ExecutionError("ExecutorUnavailable") from e

    async def _send_text(self, handle: PlatformSession, text: str, in_reply_to: Optional[str]) -> Dict[str, Any]:
        chunks = split_tweet_content(text) if len(text) > MAX_TWEET_LENGTH else [text]
        sent_ids: List[str] = []
        first: Dict[str, Any] = {}
        previous = in_reply_to
        for chunk in chunks:
            try:
                result = await handle.send_post(chunk, in_reply_to=previous)
            except Exception as e:
                if not sent_ids:
                    raise
                raise _PartialThreadError(sent_ids, len(chunks), e) from e
            if not first:
                first = result
            sent_ids.append(str(result["id"]))
            previous = str(result["id"])
        return {**first, "thread_ids": sent_ids if len(sent_ids) > 1 else []}

    async def _send_post(self, handle: PlatformSession, request: ApprovalRequest, text: str) -> Dict[str, Any]:
        return await self._send_text(handle, text, None)

    async def _send_reply(self, handle: PlatformSession, request: ApprovalRequest, text: str) -> Dict[str, Any]:
        return await self._send_text(handle, text, request.target_ref)

    async def _send_dm(self, handle: PlatformSession, request: ApprovalRequest, text: str) -> Dict[str, Any]:
        return await handle.send_dm(str(request.target_ref), text)

    async def _like(self, handle: PlatformSession, request: ApprovalRequest, text: str) -> Dict[str, Any]:
        await handle.like(str(request.target_ref))
        return {"id": str(request.target_ref)}

    async def _retweet(self, handle: PlatformSession, request: ApprovalRequest, text: str) -> Dict[str, Any]:
        data = await handle.retweet(str(request.target_ref))
        return {"id": str(data.get("id") or request.target_ref)}

    def _validate(self, request: ApprovalRequest, text: str) -> None:
        kind = request.action_kind
        if kind.requires_target and not normalize_str(request.target_ref).strip():
            raise ValueError(f"{kind.value} requires a target_ref")
        if kind.publishes_text and not text:
            raise ValueError("content is empty")

    async def execute(self, request: ApprovalRequest) -> ExecutionResult:
        if request.status is not ApprovalStatus.APPROVED:
            raise ExecutionError(
                f"Refusing to execute approval_id={request.id} in status={request.status.value}",
                approval_id=request.id,
            )
        kind = request.action_kind
        text = prepare_content(request, self.mention_prefix) if kind.publishes_text else ""
        logger.info("Executing approved action approval_id=%s kind=%s target=%s", request.id, kind.value, request.target_ref)

        partial_reason = ""
        try:
            self._validate(request, text)
            if self.dry_run:
                result: Dict[str, Any] = {"id": f"dry-run-{request.id}", "permanent_url": ""}
            else:
                handle = await self._resolve_handle()
                self._mark_executing(request)
                try:
                    result = await self._dispatch[kind](handle, request, text)
                except _PartialThreadError as e:
                    partial_reason = str(e)
                    result = {"id": e.sent_ids[0], "thread_ids": e.sent_ids}
            result_ref = normalize_str(result.get("id")).strip()
            if not result_ref:
                raise ExecutionError("platform returned no id", approval_id=request.id)
        except Exception as e:
            await self._fail(request, e)
            raise ExecutionError(str(e), approval_id=request.id) from e

        return await self._succeed(request, text, result, result_ref, partial_reason)

    def _mark_executing(self, request: ApprovalRequest) -> None:
        if self.cache is None:
            return
        try:
            self.cache.mark_executing(request)
        except Exception as e:
            logger.warning("Could not mark approval executing approval_id=%s error=%s", request.id, e)

    async def _succeed(
        self,
        request: ApprovalRequest,
        text: str,
        result: Dict[str, Any],
        result_ref: str,
        partial_reason: str,
    ) -> ExecutionResult:
        fields: Dict[str, Any] = {"result_ref": result_ref, "reviewed_at": self.clock.now()}
        if partial_reason:
            fields["reason"] = partial_reason
        sent = request.transition(ApprovalStatus.SENT, **fields)
        if self.cache is not None:
            try:
                self.cache.mark_sent(sent)
            except Exception as e:
                logger.warning("Could not cache sent outcome approval_id=%s error=%s", request.id, e)
        try:
            sent = await self.store.update_status(request.id, ApprovalStatus.SENT, **fields)
        except StoreError:
            logger.error(
                "ACTION SENT but store write failed approval_id=%s result_ref=%s; next poll retries the write",
                request.id,
                result_ref,
            )
            raise

        logger.info(
            "ACTION SENT approval_id=%s kind=%s result_ref=%s dry_run=%s",
            request.id,
            request.action_kind.value,
            result_ref,
            self.dry_run,
        )
        await self._append_ledger(sent, text, result)
        if self.show_banner:
            print_success_banner(
                request.action_kind.value,
                request.id,
                result_ref,
                normalize_str(result.get("permanent_url")),
                text or normalize_str(request.target_ref),
            )
        return ExecutionResult(
            approval_id=request.id,
            result_ref=result_ref,
            published_text=text,
            request=sent,
            thread_ids=list(result.get("thread_ids") or []),
        )

    async def _append_ledger(self, sent: ApprovalRequest, text: str, result: Dict[str, Any]) -> None:
        try:
            if sent.action_kind is ActionKind.POST:
                await self.store.append_post_ledger(post_ledger_row(sent, published_text=text, result=result))
            else:
                await self.store.append_interaction_ledger(
                    interaction_ledger_row(sent, published_text=text, result=result)
                )
        except Exception as e:
            logger.error("Ledger append failed approval_id=%s error=%s", sent.id, e)

    async def _fail(self, request: ApprovalRequest, error: BaseException) -> None:
        reason = normalize_str(error).strip() or error.__class__.__name__
        logger.error("ACTION ERROR approval_id=%s kind=%s reason=%s", request.id, request.action_kind.value, reason)
        await self.store.update_status(
            request.id,
            ApprovalStatus.ERROR,
            reason=reason,
            reviewed_at=self.clock.now(),
        )
        if self.show_banner:
            print_error_banner(request.action_kind.value, request.id, reason)

    async def finish_sent(self, request: ApprovalRequest, result_ref: str) -> ApprovalRequest:
        """Write Sent for a request whose platform call succeeded but whose store write did not."""
        return await self.store.update_status(
            request.id,
            ApprovalStatus.SENT,
            result_ref=result_ref,
            reviewed_at=self.clock.now(),
        )
