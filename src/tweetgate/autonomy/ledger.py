from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..twitter_client import tweet_url
from .drafting import normalize_str
from .models import INTERACTION_LEDGER_COLUMNS, POST_LEDGER_COLUMNS, ApprovalRequest
from .state import isoformat, utc_now


def _clip_text(value: Any, limit: int) -> str:
    text = normalize_str(value).strip()
    if limit <= 0:
        return ""
    if len(text) <= limit:
        return text
    return text[:limit].rstrip()


def _sanitize_reference(reference: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not isinstance(reference, dict):
        return None
    out: Dict[str, Any] = {}
    for raw_key, raw_value in reference.items():
        key = normalize_str(raw_key).strip()
        if not key or raw_value is None:
            continue
        lower_key = key.lower()
        if isinstance(raw_value, (bool, int, float)):
            out[key] = raw_value
            continue
        if isinstance(raw_value, dict):
            nested = _sanitize_reference(raw_value)
            if nested:
                out[key] = nested
            continue
        if isinstance(raw_value, list):
            items = []
            for item in raw_value[:25]:
                if isinstance(item, dict):
                    nested_item = _sanitize_reference(item)
                    if nested_item:
                        items.append(nested_item)
                elif isinstance(item, (int, float, bool)):
                    items.append(item)
                else:
                    clipped = _clip_text(item, 400)
                    if clipped:
                        items.append(clipped)
            if items:
                out[key] = items
            continue
        limit = 5000 if "content" in lower_key or "text" in lower_key else 400
        clipped = _clip_text(raw_value, limit)
        if clipped:
            out[key] = clipped
    return out or None


def _row(columns: List[str], values: Dict[str, Any]) -> List[str]:
    return [normalize_str(values.get(column, "")) for column in columns]


def post_ledger_row(
    request: ApprovalRequest,
    *,
    published_text: str,
    result: Dict[str, Any],
    when: Optional[datetime] = None,
) -> List[str]:
    tweet_id = normalize_str(result.get("id"))
    return _row(
        POST_LEDGER_COLUMNS,
        {
            "tweet_id": tweet_id,
            "content": published_text,
            "media_urls": "",
            "timestamp": isoformat(when or utc_now()),
            "permanent_url": result.get("permanent_url") or tweet_url(request.agent_username, tweet_id),
            "in_reply_to_id": request.target_ref or "",
            "conversation_id": result.get("conversation_id") or "",
            "approval_id": request.id,
            "agent_name": request.agent_name,
            "agent_username": request.agent_username,
            "status": request.status.value,
        },
    )


def interaction_ledger_row(
    request: ApprovalRequest,
    *,
    published_text: str,
    result: Dict[str, Any],
    when: Optional[datetime] = None,
) -> List[str]:
    """Outcome row for a target-bound action: the incoming tweet plus what the agent did with it."""
    context = request.context or {}
    target = request.target_ref or ""
    author_username = normalize_str(context.get("author_username"))
    detail = {
        "approval_id": request.id,
        "action": request.action_kind.value,
        "original_content": request.content,
        "modified_content": request.modified_content or "",
        "target_ref": target,
        "result_ref": normalize_str(result.get("id")),
        "thread_ids": result.get("thread_ids"),
        "context": context,
    }
    safe_detail = _sanitize_reference(detail) or {}
    return _row(
        INTERACTION_LEDGER_COLUMNS,
        {
            "type": request.action_kind.value,
            "tweet_id": target,
            "content": context.get("tweet_text", ""),
            "author_username": author_username,
            "author_name": context.get("author_name", ""),
            "timestamp": isoformat(when or utc_now()),
            "permanent_url": context.get("permanent_url") or (tweet_url(author_username, target) if target else ""),
            "in_reply_to_id": target,
            "conversation_id": context.get("conversation_id") or result.get("conversation_id") or "",
            "agent_response": published_text,
            "response_tweet_id": normalize_str(result.get("id")),
            "agent_name": request.agent_name,
            "agent_username": request.agent_username,
            "context": json.dumps(safe_detail, ensure_ascii=False, sort_keys=True),
        },
    )


def detected_interaction_row(
    tweet: Dict[str, Any],
    *,
    interaction_type: str,
    agent_name: str,
    agent_username: str,
    search_query: str,
    when: Optional[datetime] = None,
) -> List[str]:
    found_at = isoformat(when or utc_now())
    context = _sanitize_reference({"found_at": found_at, "search_query": search_query}) or {}
    return _row(
        INTERACTION_LEDGER_COLUMNS,
        {
            "type": interaction_type,
            "tweet_id": tweet.get("id", ""),
            "content": _clip_text(tweet.get("text"), 5000),
            "author_username": tweet.get("username", ""),
            "author_name": tweet.get("name", ""),
            "timestamp": tweet.get("created_at") or found_at,
            "permanent_url": tweet.get("permanent_url", ""),
            "in_reply_to_id": tweet.get("in_reply_to_id") or "",
            "conversation_id": tweet.get("conversation_id", ""),
            "agent_response": "",
            "response_tweet_id": "",
            "agent_name": agent_name,
            "agent_username": agent_username,
            "context": json.dumps(context, ensure_ascii=False, sort_keys=True),
        },
    )
