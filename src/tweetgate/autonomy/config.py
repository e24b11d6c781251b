from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional
import os


DEFAULT_TOPICS = [
    "autonomous agents",
    "open source tooling",
    "developer productivity",
    "human in the loop automation",
    "building in public",
]


DEFAULT_PERSONA_HINT = (
    "You are an autonomous Twitter agent. Be curious, concise, and constructive. "
    "Avoid hype, avoid financial advice, never use hashtags, and stay under 280 characters."
)


@dataclass
class Config:
    twitter_username: str
    dry_run: bool
    agent_name: str
    approval_store: str
    sheets_spreadsheet_id: str
    sheets_credentials_json: str
    approvals_sheet: str
    posts_sheet: str
    interactions_sheet: str
    poll_seconds_min: int
    poll_seconds_max: int
    decision_window_hours: float
    post_interval_min_minutes: int
    post_interval_max_minutes: int
    post_immediately: bool
    interaction_interval_min_minutes: int
    interaction_interval_max_minutes: int
    interaction_count: int
    max_interactions_per_scan: int
    like_probability: float
    retweet_probability: float
    reply_probability: float
    request_delay_min_seconds: float
    request_delay_max_seconds: float
    request_max_attempts: int
    request_backoff_base_seconds: float
    executor_resolve_attempts: int
    executor_resolve_delay_seconds: float
    reply_mention_prefix: bool
    webhook_enabled: bool
    webhook_host: str
    webhook_port: int
    cache_path: Path
    topics: List[str]
    persona_path: Optional[Path]
    openai_api_key: Optional[str]
    openai_base_url: str
    openai_model: str
    openai_temperature: float
    log_level: str
    log_path: Optional[Path]


def _parse_csv_env(env_key: str) -> List[str]:
    value = os.getenv(env_key, "")
    if not value.strip():
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _env_flag(env_key: str, default: str) -> bool:
    return os.getenv(env_key, default).strip().lower() in {"1", "true", "yes"}


def _clamp_probability(value: float) -> float:
    return max(0.0, min(1.0, value))


def load_config() -> Config:
    twitter_username = os.getenv("TWITTER_USERNAME", "").strip().lstrip("@")
    dry_run = _env_flag("TWITTER_DRY_RUN", "0")
    agent_name = os.getenv("TWEETGATE_AGENT_NAME", "").strip() or twitter_username or "tweetgate"

    approval_store = os.getenv("TWEETGATE_APPROVAL_STORE", "sheets").strip().lower()
    if approval_store not in {"sheets", "memory"}:
        approval_store = "sheets"
    sheets_spreadsheet_id = os.getenv("GOOGLE_SHEETS_SPREADSHEET_ID", "").strip()
    sheets_credentials_json = os.getenv("GOOGLE_SHEETS_CREDENTIALS", "{}").strip() or "{}"
    approvals_sheet = os.getenv("GOOGLE_SHEETS_APPROVALS_SHEET", "Approvals").strip() or "Approvals"
    posts_sheet = os.getenv("GOOGLE_SHEETS_POSTS_SHEET", "Posts").strip() or "Posts"
    interactions_sheet = os.getenv("GOOGLE_SHEETS_INTERACTIONS_SHEET", "Interactions").strip() or "Interactions"

    poll_seconds_min = int(os.getenv("TWEETGATE_POLL_SECONDS_MIN", "300"))
    poll_seconds_max = int(os.getenv("TWEETGATE_POLL_SECONDS_MAX", str(poll_seconds_min)))
    decision_window_hours = float(os.getenv("TWEETGATE_DECISION_WINDOW_HOURS", "24"))

    post_interval_min_minutes = int(os.getenv("POST_INTERVAL_MIN", "90"))
    post_interval_max_minutes = int(os.getenv("POST_INTERVAL_MAX", "180"))
    post_immediately = _env_flag("TWEETGATE_POST_IMMEDIATELY", "0")

    interaction_interval_min_minutes = int(os.getenv("TWEETGATE_INTERACTION_INTERVAL_MIN", "2"))
    interaction_interval_max_minutes = int(os.getenv("TWEETGATE_INTERACTION_INTERVAL_MAX", "5"))
    interaction_count = int(os.getenv("TWEETGATE_INTERACTION_COUNT", "20"))
    max_interactions_per_scan = int(os.getenv("TWEETGATE_MAX_INTERACTIONS_PER_SCAN", "5"))
    like_probability = _clamp_probability(float(os.getenv("TWEETGATE_LIKE_PROBABILITY", "0.5")))
    retweet_probability = _clamp_probability(float(os.getenv("TWEETGATE_RETWEET_PROBABILITY", "0.2")))
    reply_probability = _clamp_probability(float(os.getenv("TWEETGATE_REPLY_PROBABILITY", "1.0")))

    request_delay_min_seconds = float(os.getenv("TWEETGATE_REQUEST_DELAY_MIN", "1.5"))
    request_delay_max_seconds = float(os.getenv("TWEETGATE_REQUEST_DELAY_MAX", "3.5"))
    request_max_attempts = int(os.getenv("TWEETGATE_REQUEST_MAX_ATTEMPTS", "4"))
    request_backoff_base_seconds = float(os.getenv("TWEETGATE_REQUEST_BACKOFF_BASE", "1.0"))
    executor_resolve_attempts = int(os.getenv("TWEETGATE_EXECUTOR_RESOLVE_ATTEMPTS", "3"))
    executor_resolve_delay_seconds = float(os.getenv("TWEETGATE_EXECUTOR_RESOLVE_DELAY", "2.0"))
    reply_mention_prefix = _env_flag("TWEETGATE_REPLY_MENTION_PREFIX", "1")

    webhook_enabled = _env_flag("TWEETGATE_WEBHOOK_ENABLED", "1")
    webhook_host = os.getenv("TWEETGATE_WEBHOOK_HOST", "0.0.0.0").strip() or "0.0.0.0"
    webhook_port = int(os.getenv("SERVER_PORT", "3000"))

    cache_path = Path(os.getenv("TWEETGATE_CACHE_PATH", "memory/tweetgate-cache.json"))
    topics = _parse_csv_env("TWEETGATE_TOPICS") or DEFAULT_TOPICS[:]
    persona_path_str = os.getenv("TWEETGATE_PERSONA_PATH", "").strip()
    persona_path = Path(persona_path_str) if persona_path_str else None

    openai_api_key = os.getenv("OPENAI_API_KEY")
    openai_base_url = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1").rstrip("/")
    openai_model = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
    openai_temperature = float(os.getenv("OPENAI_TEMPERATURE", "0.7"))

    log_level = os.getenv("TWEETGATE_LOG_LEVEL", "INFO").strip().upper()
    log_path_str = os.getenv("TWEETGATE_LOG_PATH", "").strip()
    log_path = Path(log_path_str) if log_path_str else None

    return Config(
        twitter_username=twitter_username,
        dry_run=dry_run,
        agent_name=agent_name,
        approval_store=approval_store,
        sheets_spreadsheet_id=sheets_spreadsheet_id,
        sheets_credentials_json=sheets_credentials_json,
        approvals_sheet=approvals_sheet,
        posts_sheet=posts_sheet,
        interactions_sheet=interactions_sheet,
        poll_seconds_min=poll_seconds_min,
        poll_seconds_max=max(poll_seconds_min, poll_seconds_max),
        decision_window_hours=decision_window_hours,
        post_interval_min_minutes=post_interval_min_minutes,
        post_interval_max_minutes=max(post_interval_min_minutes, post_interval_max_minutes),
        post_immediately=post_immediately,
        interaction_interval_min_minutes=interaction_interval_min_minutes,
        interaction_interval_max_minutes=max(interaction_interval_min_minutes, interaction_interval_max_minutes),
        interaction_count=interaction_count,
        max_interactions_per_scan=max_interactions_per_scan,
        like_probability=like_probability,
        retweet_probability=retweet_probability,
        reply_probability=reply_probability,
        request_delay_min_seconds=request_delay_min_seconds,
        request_delay_max_seconds=max(request_delay_min_seconds, request_delay_max_seconds),
        request_max_attempts=max(1, request_max_attempts),
        request_backoff_base_seconds=request_backoff_base_seconds,
        executor_resolve_attempts=max(1, executor_resolve_attempts),
        executor_resolve_delay_seconds=executor_resolve_delay_seconds,
        reply_mention_prefix=reply_mention_prefix,
        webhook_enabled=webhook_enabled,
        webhook_host=webhook_host,
        webhook_port=webhook_port,
        cache_path=cache_path,
        topics=topics,
        persona_path=persona_path,
        openai_api_key=openai_api_key,
        openai_base_url=openai_base_url,
        openai_model=openai_model,
        openai_temperature=openai_temperature,
        log_level=log_level,
        log_path=log_path,
    )
