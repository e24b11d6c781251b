from __future__ import annotations

import json
import random
import string
import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .drafting import normalize_str
from .errors import InvalidTransitionError
from .state import isoformat, parse_iso, utc_now


class ActionKind(str, Enum):
    POST = "post"
    REPLY = "reply"
    MENTION = "mention"
    DIRECT_MESSAGE = "dm"
    LIKE = "like"
    RETWEET = "retweet"

    @property
    def requires_target(self) -> bool:
        return self is not ActionKind.POST

    @property
    def deduplicated(self) -> bool:
        return self in _DEDUPED_KINDS

    @property
    def publishes_text(self) -> bool:
        return self in {ActionKind.POST, ActionKind.REPLY, ActionKind.MENTION, ActionKind.DIRECT_MESSAGE}

    @property
    def is_reply(self) -> bool:
        return self in REPLY_KINDS

    @classmethod
    def parse(cls, value: Any) -> "ActionKind":
        text = normalize_str(value).strip().lower()
        aliases = {"tweet": "post", "direct_message": "dm", "directmessage": "dm", "repost": "retweet"}
        text = aliases.get(text, text)
        try:
            return cls(text)
        except ValueError as e:
            raise ValueError(f"Unknown action kind: {value!r}") from e


_DEDUPED_KINDS = frozenset({ActionKind.REPLY, ActionKind.MENTION, ActionKind.LIKE, ActionKind.RETWEET})
REPLY_KINDS = frozenset({ActionKind.REPLY, ActionKind.MENTION})


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    SENT = "sent"
    ERROR = "error"

    @property
    def terminal(self) -> bool:
        return self in {ApprovalStatus.REJECTED, ApprovalStatus.SENT, ApprovalStatus.ERROR}

    @classmethod
    def parse(cls, value: Any) -> "ApprovalStatus":
        text = normalize_str(value).strip().lower() or "pending"
        try:
            return cls(text)
        except ValueError as e:
            raise ValueError(f"Unknown approval status: {value!r}") from e


ALLOWED_TRANSITIONS: Dict[ApprovalStatus, Tuple[ApprovalStatus, ...]] = {
    ApprovalStatus.PENDING: (ApprovalStatus.APPROVED, ApprovalStatus.REJECTED),
    ApprovalStatus.APPROVED: (ApprovalStatus.SENT, ApprovalStatus.ERROR),
    # REJECTED, SENT, ERROR are terminal
}

# Statuses that block a second request for the same dedupe key.
ACTIVE_STATUSES = frozenset({ApprovalStatus.PENDING, ApprovalStatus.APPROVED, ApprovalStatus.SENT})


def validate_transition(current: ApprovalStatus, new: ApprovalStatus, approval_id: str) -> None:
    allowed = ALLOWED_TRANSITIONS.get(current, ())
    if new not in allowed:
        raise InvalidTransitionError(
            f"Invalid status transition for approval_id={approval_id}: "
            f"{current.value} -> {new.value} not allowed "
            f"(allowed={[s.value for s in allowed]})"
        )


APPROVAL_COLUMNS: List[str] = [
    "approval_id",
    "content_type",
    "content",
    "modified_content",
    "context",
    "agent_name",
    "agent_username",
    "status",
    "timestamp",
    "review_timestamp",
    "reviewer",
    "reason",
    "tweet_id",
]

POST_LEDGER_COLUMNS: List[str] = [
    "tweet_id",
    "content",
    "media_urls",
    "timestamp",
    "permanent_url",
    "in_reply_to_id",
    "conversation_id",
    "approval_id",
    "agent_name",
    "agent_username",
    "status",
]

INTERACTION_LEDGER_COLUMNS: List[str] = [
    "type",
    "tweet_id",
    "content",
    "author_username",
    "author_name",
    "timestamp",
    "permanent_url",
    "in_reply_to_id",
    "conversation_id",
    "agent_response",
    "response_tweet_id",
    "agent_name",
    "agent_username",
    "context",
]

# The approvals table has no target column, so the target travels inside the context JSON.
TARGET_CONTEXT_KEY = "target_ref"

_ID_ALPHABET = string.ascii_lowercase + string.digits


def new_approval_id(now_ms: Optional[int] = None, rng: Optional[random.Random] = None) -> str:
    millis = int(time.time() * 1000) if now_ms is None else int(now_ms)
    chooser = rng or random.SystemRandom()
    suffix = "".join(chooser.choice(_ID_ALPHABET) for _ in range(9))
    return f"{millis}-{suffix}"


def dedupe_key(kind: ActionKind, target_ref: Optional[str]) -> Optional[str]:
    if not kind.deduplicated:
        return None
    target = normalize_str(target_ref).strip()
    if not target:
        return None
    return f"{kind.value}:{target}"


def _encode_context(context: Dict[str, Any], target_ref: Optional[str]) -> str:
    payload = dict(context)
    if target_ref:
        payload[TARGET_CONTEXT_KEY] = target_ref
    if not payload:
        return ""
    return json.dumps(payload, ensure_ascii=False, sort_keys=True)


def _decode_context(raw: Any) -> Tuple[Dict[str, Any], Optional[str]]:
    text = normalize_str(raw).strip()
    if not text:
        return {}, None
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return {"raw": text}, None
    if not isinstance(data, dict):
        return {"raw": data}, None
    target = data.pop(TARGET_CONTEXT_KEY, None)
    target_ref = normalize_str(target).strip() or None
    return data, target_ref


@dataclass
class ApprovalRequest:
    id: str
    action_kind: ActionKind
    content: str = ""
    target_ref: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)
    status: ApprovalStatus = ApprovalStatus.PENDING
    created_at: datetime = field(default_factory=utc_now)
    reviewed_at: Optional[datetime] = None
    modified_content: Optional[str] = None
    reason: str = ""
    result_ref: Optional[str] = None
    agent_name: str = ""
    agent_username: str = ""
    reviewer: str = ""

    @property
    def dedupe_key(self) -> Optional[str]:
        return dedupe_key(self.action_kind, self.target_ref)

    def resolved_content(self) -> str:
        """Text to publish: reviewer edits win over the generated draft for every kind."""
        modified = normalize_str(self.modified_content).strip()
        if modified:
            return modified
        return normalize_str(self.content)

    def transition(self, new_status: ApprovalStatus, **fields: Any) -> "ApprovalRequest":
        """Return a copy moved to ``new_status`` with ``fields`` applied.

        ``result_ref`` is cleared on every status other than Sent.
        """
        validate_transition(self.status, new_status, self.id)
        updated = replace(self, status=new_status, **fields)
        if new_status is not ApprovalStatus.SENT:
            updated.result_ref = None
        return updated

    def to_row(self) -> List[str]:
        values = {
            "approval_id": self.id,
            "content_type": self.action_kind.value,
            "content": self.content,
            "modified_content": self.modified_content or "",
            "context": _encode_context(self.context, self.target_ref),
            "agent_name": self.agent_name,
            "agent_username": self.agent_username,
            "status": self.status.value,
            "timestamp": isoformat(self.created_at),
            "review_timestamp": isoformat(self.reviewed_at) if self.reviewed_at else "",
            "reviewer": self.reviewer,
            "reason": self.reason,
            "tweet_id": self.result_ref or "",
        }
        return [normalize_str(values[column]) for column in APPROVAL_COLUMNS]

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "ApprovalRequest":
        """Build a request from a header-keyed store row. Missing cells read as empty."""
        approval_id = normalize_str(record.get("approval_id")).strip()
        if not approval_id:
            raise ValueError("Row has no approval_id")
        context, target_ref = _decode_context(record.get("context"))
        status = ApprovalStatus.parse(record.get("status"))
        created_at = parse_iso(record.get("timestamp")) or utc_now()
        result_ref = normalize_str(record.get("tweet_id")).strip() or None
        return cls(
            id=approval_id,
            action_kind=ActionKind.parse(record.get("content_type")),
            content=normalize_str(record.get("content")),
            target_ref=target_ref,
            context=context,
            status=status,
            created_at=created_at,
            reviewed_at=parse_iso(record.get("review_timestamp")),
            modified_content=normalize_str(record.get("modified_content")) or None,
            reason=normalize_str(record.get("reason")),
            result_ref=result_ref if status is ApprovalStatus.SENT else None,
            agent_name=normalize_str(record.get("agent_name")),
            agent_username=normalize_str(record.get("agent_username")),
            reviewer=normalize_str(record.get("reviewer")),
        )

    @classmethod
    def from_row(cls, row: List[Any], headers: Optional[List[str]] = None) -> "ApprovalRequest":
        columns = headers or APPROVAL_COLUMNS
        record = {name: (row[idx] if idx < len(row) else "") for idx, name in enumerate(columns)}
        return cls.from_record(record)

    def to_cache(self) -> Dict[str, Any]:
        return dict(zip(APPROVAL_COLUMNS, self.to_row()))
