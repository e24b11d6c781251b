import json
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests
from requests import exceptions as requests_exceptions

from .config import Config, DEFAULT_PERSONA_HINT
from .errors import ModelError


MAX_TWEET_LENGTH = 280

POST_TEMPLATE = """# About {{agentName}} (@{{twitterUserName}}):
{{persona}}

# Recent timeline:
{{timeline}}

# Task: Write a single post in the voice of {{agentName}} about {{topic}}, without naming {{topic}} directly.
Say something different from the recent timeline. No questions, no emojis, no hashtags.
Separate statements with a blank line. Reply with the post text only."""

SHOULD_RESPOND_TEMPLATE = """# About {{agentName}} (@{{twitterUserName}}):
{{persona}}

# Conversation:
{{currentPost}}

Response options are RESPOND, IGNORE and STOP.
{{agentName}} should RESPOND to messages directed at them or relevant to their background,
IGNORE messages that are irrelevant or very short, and STOP if asked to stop or the conversation is over.
If in doubt, IGNORE.

# INSTRUCTIONS: Reply with [RESPOND], [IGNORE] or [STOP] only."""

REPLY_TEMPLATE = """# About {{agentName}} (@{{twitterUserName}}):
{{persona}}

# Post being answered:
{{currentPost}}

# Task: Write a short reply from {{agentName}} to the post above.
Stay under 280 characters, no hashtags, no emojis. Reply with the text only."""

RESPONSE_DECISIONS = ("RESPOND", "IGNORE", "STOP")

_PLACEHOLDER_RE = re.compile(r"\{\{\s*([A-Za-z0-9_]+)\s*\}\}")
_FENCE_LANG_RE = re.compile(r"[A-Za-z0-9_+-]+")
_SENTENCE_RE = re.compile(r"[^.!?]+[.!?]+|[^.!?]+$")
_STRUCTURED_TEXT_KEYS = ("text", "content", "post", "tweet", "reply", "message")


def normalize_str(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


def load_persona_text(path: Optional[Path]) -> str:
    if not path or not path.exists():
        return DEFAULT_PERSONA_HINT
    text = path.read_text(encoding="utf-8").strip()
    return text or DEFAULT_PERSONA_HINT


def compose_context(template: str, state: Dict[str, Any]) -> str:
    """Fill ``{{name}}`` placeholders from ``state``; unknown names become empty."""

    def _sub(match: "re.Match[str]") -> str:
        return normalize_str(state.get(match.group(1), ""))

    return _PLACEHOLDER_RE.sub(_sub, template)


def strip_outer_quotes(text: Any) -> str:
    value = normalize_str(text).strip()
    if len(value) >= 2 and value[0] in {'"', "'"} and value[-1] in {'"', "'"}:
        return value[1:-1].strip()
    return value


def truncate_to_complete_sentence(text: str, max_length: int = MAX_TWEET_LENGTH) -> str:
    if len(text) <= max_length:
        return text
    cut_at_period = text[: text.rfind(".", 0, max_length) + 1]
    if cut_at_period.strip():
        return cut_at_period.strip()
    last_space = text.rfind(" ", 0, max_length - 3)
    if last_space > 0 and text[:last_space].strip():
        return text[:last_space].strip() + "..."
    return text[: max_length - 3].strip() + "..."


def _split_paragraph(paragraph: str, max_length: int) -> List[str]:
    sentences = [s.strip() for s in _SENTENCE_RE.findall(paragraph) if s.strip()] or [paragraph]
    chunks: List[str] = []
    current = ""
    for sentence in sentences:
        candidate = f"{current} {sentence}".strip()
        if len(candidate) <= max_length:
            current = candidate
            continue
        if current:
            chunks.append(current)
        if len(sentence) <= max_length:
            current = sentence
            continue
        current = ""
        for word in sentence.split():
            candidate = f"{current} {word}".strip()
            if len(candidate) <= max_length:
                current = candidate
                continue
            if current:
                chunks.append(current)
            # A single word longer than a tweet is hard-cut.
            while len(word) > max_length:
                chunks.append(word[:max_length])
                word = word[max_length:]
            current = word
    if current:
        chunks.append(current)
    return chunks


def split_tweet_content(content: str, max_length: int = MAX_TWEET_LENGTH) -> List[str]:
    """Split text into thread-sized chunks on paragraph, then sentence, then word boundaries."""
    tweets: List[str] = []
    current = ""
    for raw_paragraph in normalize_str(content).split("\n\n"):
        paragraph = raw_paragraph.strip()
        if not paragraph:
            continue
        candidate = f"{current}\n\n{paragraph}" if current else paragraph
        if len(candidate) <= max_length:
            current = candidate
            continue
        if current:
            tweets.append(current)
        if len(paragraph) <= max_length:
            current = paragraph
        else:
            chunks = _split_paragraph(paragraph, max_length)
            tweets.extend(chunks[:-1])
            current = chunks[-1]
    if current:
        tweets.append(current)
    return tweets


def _text_from_structured(data: Any) -> str:
    if isinstance(data, str):
        return data
    if isinstance(data, dict):
        for key in _STRUCTURED_TEXT_KEYS:
            value = data.get(key)
            if isinstance(value, str) and value.strip():
                return value
            if isinstance(value, dict):
                nested = _text_from_structured(value)
                if nested:
                    return nested
    return ""


def unwrap_structured_content(text: str) -> str:
    """Unwrap model output fenced as code or JSON into the plain text to publish.

    Raises ValueError when the text is fenced but the payload cannot be recovered.
    """
    raw = normalize_str(text).strip()
    if raw.startswith("```"):
        body = raw[3:]
        if not body.endswith("```"):
            raise ValueError("unterminated code fence")
        body = body[:-3]
        inner = body
        if "\n" in body:
            first_line, rest = body.split("\n", 1)
            if not first_line.strip() or _FENCE_LANG_RE.fullmatch(first_line.strip()):
                inner = rest
        inner = inner.strip()
        if not inner:
            raise ValueError("empty code fence")
        if inner[:1] in {"{", "["} or inner[:1] == '"':
            try:
                data = json.loads(inner)
            except json.JSONDecodeError as e:
                raise ValueError(f"fenced payload is not valid JSON: {e}") from e
            extracted = _text_from_structured(data).strip()
            if not extracted:
                raise ValueError("fenced JSON payload has no text field")
            return extracted
        return inner
    if raw.startswith("{") and raw.endswith("}"):
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            return raw
        extracted = _text_from_structured(data).strip()
        return extracted or raw
    return raw


def clean_generated_text(text: Any) -> str:
    value = normalize_str(text).replace("\\n", "\n").strip()
    return strip_outer_quotes(value)


def parse_response_decision(text: Any) -> str:
    upper = normalize_str(text).upper()
    positions = [(upper.find(option), option) for option in RESPONSE_DECISIONS if option in upper]
    if not positions:
        return "IGNORE"
    return min(positions)[1]


def call_openai(cfg: Config, messages: List[Dict[str, str]]) -> str:
    if not cfg.openai_api_key:
        raise ModelError("OPENAI_API_KEY not set")

    url = f"{cfg.openai_base_url}/chat/completions"
    headers = {
        "Authorization": f"Bearer {cfg.openai_api_key}",
        "Content-Type": "application/json",
    }
    payload = {
        "model": cfg.openai_model,
        "messages": messages,
        "temperature": cfg.openai_temperature,
    }
    logger = logging.getLogger("tweetgate.autonomy")
    logger.debug("LLM request model=%s messages=%s", cfg.openai_model, len(messages))
    try:
        resp = requests.post(url, headers=headers, data=json.dumps(payload), timeout=60)
    except requests_exceptions.RequestException as e:
        raise ModelError(f"OpenAI request failed: {e}") from e
    if resp.status_code >= 400:
        raise ModelError(f"OpenAI error {resp.status_code}: {resp.text}")

    data = resp.json()
    try:
        content = data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError) as e:
        raise ModelError("OpenAI response missing choices[0].message.content") from e
    logger.debug("LLM response chars=%s", len(normalize_str(content)))
    return normalize_str(content)
