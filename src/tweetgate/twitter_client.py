import json
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests
from requests import exceptions as requests_exceptions


TWITTER_BASE_URL = "https://api.twitter.com/2"
TWITTER_BASE_ENV = "TWITTER_API_BASE"
CREDENTIALS_PATH = Path.home() / ".config" / "tweetgate" / "credentials.json"
_TWITTER_ALLOWED_PREFIXES = ("https://api.twitter.com/2", "https://api.x.com/2")

TWEET_FIELDS = "author_id,conversation_id,created_at,in_reply_to_user_id,referenced_tweets"
USER_FIELDS = "username,name"


def tweet_url(username: str, tweet_id: str) -> str:
    handle = str(username or "").strip().lstrip("@") or "i"
    return f"https://twitter.com/{handle}/status/{tweet_id}"


class TwitterAuthError(Exception):
    pass


class TwitterAPIError(RuntimeError):
    def __init__(self, status_code: int, message: str):
        super().__init__(f"Twitter error {status_code}: {message}")
        self.status_code = status_code


class TwitterRateLimitError(TwitterAPIError):
    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(429, message)
        self.retry_after = retry_after


@dataclass
class TwitterCredentials:
    access_token: str
    username: Optional[str] = None
    source: str = "unknown"

    @classmethod
    def load(cls) -> "TwitterCredentials":
        """Load credentials from env or ~/.config/tweetgate/credentials.json.

        Priority:
        1. TWITTER_ACCESS_TOKEN env var
        2. credentials.json file
        """
        if os.getenv("TWITTER_SKIP_AUTH_VALIDATION", "").strip().lower() in {"1", "true", "yes"}:
            return cls(
                access_token=os.getenv("TWITTER_ACCESS_TOKEN", ""),
                username=os.getenv("TWITTER_USERNAME"),
                source="env:TWITTER_ACCESS_TOKEN",
            )
        access_token = os.getenv("TWITTER_ACCESS_TOKEN")
        username = os.getenv("TWITTER_USERNAME")
        source = "env:TWITTER_ACCESS_TOKEN"

        if not access_token and CREDENTIALS_PATH.exists():
            with CREDENTIALS_PATH.open("r", encoding="utf-8") as f:
                data = json.load(f)
            access_token = data.get("access_token")
            username = username or data.get("username")
            source = f"file:{CREDENTIALS_PATH}"

        if access_token is not None:
            access_token = str(access_token).strip()

        if not access_token:
            raise TwitterAuthError(
                "Missing Twitter access token. Set TWITTER_ACCESS_TOKEN or create "
                f"{CREDENTIALS_PATH} with an 'access_token' field."
            )

        if username:
            username = str(username).strip().lstrip("@") or None
        return cls(access_token=access_token, username=username, source=source)


def normalize_tweets(payload: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Flatten a v2 tweets payload, joining author fields from ``includes.users``."""
    data = payload.get("data") or []
    if isinstance(data, dict):
        data = [data]
    users: Dict[str, Dict[str, Any]] = {}
    for user in (payload.get("includes") or {}).get("users") or []:
        if isinstance(user, dict) and user.get("id"):
            users[str(user["id"])] = user
    tweets: List[Dict[str, Any]] = []
    for item in data:
        if not isinstance(item, dict) or not item.get("id"):
            continue
        author = users.get(str(item.get("author_id") or ""), {})
        in_reply_to_id = None
        for ref in item.get("referenced_tweets") or []:
            if isinstance(ref, dict) and ref.get("type") == "replied_to":
                in_reply_to_id = str(ref.get("id") or "") or None
        username = str(author.get("username") or "")
        tweet_id = str(item["id"])
        tweets.append(
            {
                "id": tweet_id,
                "text": str(item.get("text") or ""),
                "author_id": str(item.get("author_id") or ""),
                "username": username,
                "name": str(author.get("name") or ""),
                "conversation_id": str(item.get("conversation_id") or ""),
                "in_reply_to_id": in_reply_to_id,
                "created_at": str(item.get("created_at") or ""),
                "permanent_url": tweet_url(username, tweet_id),
            }
        )
    return tweets


class TwitterClient:
    """Minimal Twitter API v2 client for posting, engagement, and mention reads.

    SECURITY: This client only ever sends your token to the official API hosts.
    Never modify it to talk to other domains with your token.
    """

    def __init__(self, credentials: Optional[TwitterCredentials] = None, timeout: int = 30):
        self.credentials = credentials or TwitterCredentials.load()
        env_base = os.getenv(TWITTER_BASE_ENV)
        self.base_url = self._normalize_base_url(env_base or TWITTER_BASE_URL)
        self.timeout = timeout

    def _normalize_base_url(self, raw: str) -> str:
        candidate = str(raw).strip().rstrip("/")
        if candidate.startswith(_TWITTER_ALLOWED_PREFIXES):
            return candidate
        # Enforce the official API host so auth headers are never sent elsewhere.
        return TWITTER_BASE_URL

    @property
    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.credentials.access_token}",
            "Content-Type": "application/json",
        }

    def _url(self, path: str) -> str:
        path = path.lstrip("/")
        return f"{self.base_url}/{path}"

    @staticmethod
    def _error_message(resp: Any) -> str:
        try:
            data = resp.json()
        except ValueError:
            return resp.text or "unknown error"
        if not isinstance(data, dict):
            return resp.text or "unknown error"
        errors = data.get("errors")
        if isinstance(errors, list) and errors and isinstance(errors[0], dict):
            first = errors[0]
            return str(first.get("detail") or first.get("message") or first.get("title") or resp.text)
        return str(data.get("detail") or data.get("title") or data.get("error") or resp.text or "unknown error")

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        try:
            resp = requests.request(
                method,
                self._url(path),
                headers=self._headers,
                params=params,
                data=json.dumps(payload) if payload is not None else None,
                timeout=self.timeout,
            )
        except requests_exceptions.Timeout as e:
            raise RuntimeError(
                f"Timed out while contacting Twitter for /{path.lstrip('/')}. "
                "Check https://api.twitter.com is reachable from your network and try again."
            ) from e

        if resp.status_code in {401, 403}:
            raise TwitterAuthError(f"Twitter auth error {resp.status_code}: {self._error_message(resp)}")

        if resp.status_code == 429:
            retry_after: Optional[float] = None
            reset = (getattr(resp, "headers", None) or {}).get("x-rate-limit-reset")
            if reset:
                try:
                    retry_after = max(0.0, float(reset) - time.time())
                except ValueError:
                    retry_after = None
            raise TwitterRateLimitError(self._error_message(resp), retry_after=retry_after)

        if resp.status_code >= 400:
            raise TwitterAPIError(resp.status_code, self._error_message(resp))

        try:
            return resp.json()
        except ValueError:
            return {}

    def get_me(self) -> Dict[str, Any]:
        data = self._request("GET", "users/me", params={"user.fields": "username,name,description"})
        user = data.get("data") or {}
        if not user.get("id"):
            raise TwitterAPIError(200, "users/me returned no user")
        return user

    def search_recent(self, query: str, max_results: int = 20, since_id: Optional[str] = None) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {
            "query": query,
            # The endpoint rejects values outside 10..100.
            "max_results": max(10, min(100, int(max_results))),
            "tweet.fields": TWEET_FIELDS,
            "expansions": "author_id",
            "user.fields": USER_FIELDS,
        }
        if since_id:
            params["since_id"] = since_id
        return normalize_tweets(self._request("GET", "tweets/search/recent", params=params))

    def get_home_timeline(self, user_id: str, max_results: int = 50) -> List[Dict[str, Any]]:
        params = {
            "max_results": max(1, min(100, int(max_results))),
            "tweet.fields": TWEET_FIELDS,
            "expansions": "author_id",
            "user.fields": USER_FIELDS,
        }
        return normalize_tweets(
            self._request("GET", f"users/{user_id}/timelines/reverse_chronological", params=params)
        )

    def create_tweet(self, text: str, in_reply_to: Optional[str] = None) -> Dict[str, Any]:
        if not text.strip():
            raise ValueError("text must be provided.")
        payload: Dict[str, Any] = {"text": text}
        if in_reply_to:
            payload["reply"] = {"in_reply_to_tweet_id": str(in_reply_to)}
        data = self._request("POST", "tweets", payload=payload)
        tweet = data.get("data") or {}
        if not tweet.get("id"):
            raise TwitterAPIError(200, "create tweet returned no id")
        return tweet

    def like_tweet(self, user_id: str, tweet_id: str) -> Dict[str, Any]:
        data = self._request("POST", f"users/{user_id}/likes", payload={"tweet_id": str(tweet_id)})
        return data.get("data") or {}

    def retweet(self, user_id: str, tweet_id: str) -> Dict[str, Any]:
        data = self._request("POST", f"users/{user_id}/retweets", payload={"tweet_id": str(tweet_id)})
        return data.get("data") or {}

    def send_direct_message(self, participant_id: str, text: str) -> Dict[str, Any]:
        if not text.strip():
            raise ValueError("text must be provided.")
        data = self._request(
            "POST",
            f"dm_conversations/with/{participant_id}/messages",
            payload={"text": text},
        )
        return data.get("data") or {}
