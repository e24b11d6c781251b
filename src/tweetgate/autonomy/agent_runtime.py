from __future__ import annotations

import asyncio
import os
from typing import Any, Dict, Optional

from .cache import CacheManager
from .config import Config
from .drafting import call_openai, load_persona_text


class AgentRuntime:
    """Capabilities the agent borrows from its runtime: state, text generation, cache, settings."""

    cache_manager: CacheManager

    async def compose_state(self, message: Dict[str, Any], extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        raise NotImplementedError

    async def generate_text(self, context: str, model_class: str = "small") -> str:
        raise NotImplementedError

    def get_setting(self, key: str) -> Optional[str]:
        raise NotImplementedError


class OpenAIAgentRuntime(AgentRuntime):
    """Runtime backed by an OpenAI-compatible chat completions endpoint."""

    def __init__(self, cfg: Config, cache_manager: CacheManager):
        self.cfg = cfg
        self.cache_manager = cache_manager
        self.persona = load_persona_text(cfg.persona_path)

    async def compose_state(self, message: Dict[str, Any], extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        state: Dict[str, Any] = {
            "agentName": self.cfg.agent_name,
            "twitterUserName": self.cfg.twitter_username,
            "persona": self.persona,
            "message": message.get("text", ""),
        }
        state.update(extra or {})
        return state

    async def generate_text(self, context: str, model_class: str = "small") -> str:
        messages = [
            {"role": "system", "content": self.persona},
            {"role": "user", "content": context},
        ]
        return await asyncio.to_thread(call_openai, self.cfg, messages)

    def get_setting(self, key: str) -> Optional[str]:
        value = os.getenv(key)
        return value if value not in {None, ""} else None
