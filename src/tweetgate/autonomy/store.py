from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from .errors import NotFoundError
from .models import (
    ACTIVE_STATUSES,
    APPROVAL_COLUMNS,
    ApprovalRequest,
    ApprovalStatus,
    REPLY_KINDS,
    ActionKind,
)
from .state import utc_now


class DecisionStore:
    """Durable system of record for approval requests plus the two outcome ledgers.

    Subclasses provide row storage (``list_all``, ``append``, ``_write``) and the
    ledger appends; the queries below are derived from ``list_all`` so every
    adapter answers them the same way. ``list_all`` returns rows in the store's
    native order.
    """

    async def list_all(self) -> List[ApprovalRequest]:
        raise NotImplementedError

    async def append(self, request: ApprovalRequest) -> None:
        raise NotImplementedError

    async def _write(self, request: ApprovalRequest) -> None:
        raise NotImplementedError

    async def append_post_ledger(self, row: List[str]) -> None:
        raise NotImplementedError

    async def append_interaction_ledger(self, row: List[str]) -> None:
        raise NotImplementedError

    async def get(self, approval_id: str) -> Optional[ApprovalRequest]:
        for request in await self.list_all():
            if request.id == approval_id:
                return request
        return None

    async def list_resolved(
        self,
        window: timedelta,
        now: Optional[datetime] = None,
    ) -> List[ApprovalRequest]:
        """Approved or Rejected rows created within ``window`` of ``now``."""
        cutoff = (now or utc_now()) - window
        return [
            r
            for r in await self.list_all()
            if r.status in {ApprovalStatus.APPROVED, ApprovalStatus.REJECTED} and r.created_at >= cutoff
        ]

    async def find_active(self, dedupe_key: str) -> Optional[ApprovalRequest]:
        for request in await self.list_all():
            if request.dedupe_key == dedupe_key and request.status in ACTIVE_STATUSES:
                return request
        return None

    async def find_sent_for_target(
        self,
        target_ref: str,
        kinds: Iterable[ActionKind] = REPLY_KINDS,
    ) -> Optional[ApprovalRequest]:
        wanted = set(kinds)
        for request in await self.list_all():
            if (
                request.status is ApprovalStatus.SENT
                and request.action_kind in wanted
                and request.target_ref == target_ref
            ):
                return request
        return None

    async def update_status(
        self,
        approval_id: str,
        status: ApprovalStatus,
        **fields: Any,
    ) -> ApprovalRequest:
        current = await self.get(approval_id)
        if current is None:
            raise NotFoundError(approval_id)
        updated = current.transition(status, **fields)
        await self._write(updated)
        return updated


class InMemoryDecisionStore(DecisionStore):
    """Row store kept in process memory. Rows are serialized on the way in and out."""

    def __init__(self) -> None:
        self.rows: List[List[str]] = []
        self.posts_ledger: List[List[str]] = []
        self.interactions_ledger: List[List[str]] = []
        self.writes = 0

    async def list_all(self) -> List[ApprovalRequest]:
        return [ApprovalRequest.from_row(row) for row in self.rows]

    async def append(self, request: ApprovalRequest) -> None:
        self.rows.append(request.to_row())
        self.writes += 1

    async def _write(self, request: ApprovalRequest) -> None:
        for idx, row in enumerate(self.rows):
            if row[0] == request.id:
                self.rows[idx] = request.to_row()
                self.writes += 1
                return
        raise NotFoundError(request.id)

    async def append_post_ledger(self, row: List[str]) -> None:
        self.posts_ledger.append(list(row))

    async def append_interaction_ledger(self, row: List[str]) -> None:
        self.interactions_ledger.append(list(row))

    def record(self, approval_id: str) -> Dict[str, str]:
        for row in self.rows:
            if row[0] == approval_id:
                return dict(zip(APPROVAL_COLUMNS, row))
        raise NotFoundError(approval_id)

    def apply_review(
        self,
        approval_id: str,
        approved: bool,
        *,
        modified_content: Optional[str] = None,
        reason: str = "",
        reviewer: str = "",
    ) -> None:
        """Edit a row the way a reviewer edits the spreadsheet, outside the agent."""
        for idx, row in enumerate(self.rows):
            if row[0] != approval_id:
                continue
            record = dict(zip(APPROVAL_COLUMNS, row))
            record["status"] = ApprovalStatus.APPROVED.value if approved else ApprovalStatus.REJECTED.value
            record["review_timestamp"] = utc_now().isoformat()
            record["reviewer"] = reviewer
            record["reason"] = reason
            if modified_content is not None:
                record["modified_content"] = modified_content
            self.rows[idx] = [record[column] for column in APPROVAL_COLUMNS]
            return
        raise NotFoundError(approval_id)
