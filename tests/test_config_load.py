import os
import unittest
from pathlib import Path
from unittest.mock import patch

from tweetgate.autonomy.config import DEFAULT_TOPICS, load_config


class ConfigLoadTests(unittest.TestCase):
    def test_load_config_returns_config(self) -> None:
        cfg = load_config()
        self.assertIsNotNone(cfg)

    def test_defaults(self) -> None:
        with patch.dict(os.environ, {}, clear=True):
            cfg = load_config()

        self.assertFalse(cfg.dry_run)
        self.assertEqual(cfg.approval_store, "sheets")
        self.assertEqual(cfg.approvals_sheet, "Approvals")
        self.assertEqual(cfg.poll_seconds_min, 300)
        self.assertEqual(cfg.poll_seconds_max, 300)
        self.assertEqual(cfg.decision_window_hours, 24.0)
        self.assertEqual(cfg.webhook_port, 3000)
        self.assertEqual(cfg.topics, DEFAULT_TOPICS)
        self.assertEqual(cfg.agent_name, "tweetgate")
        self.assertIsNone(cfg.persona_path)
        self.assertIsNone(cfg.log_path)

    def test_env_overrides(self) -> None:
        env = {
            "TWITTER_USERNAME": "@gatebot",
            "TWITTER_DRY_RUN": "true",
            "TWEETGATE_APPROVAL_STORE": "Memory",
            "TWEETGATE_POLL_SECONDS_MIN": "120",
            "TWEETGATE_POLL_SECONDS_MAX": "60",
            "TWEETGATE_LIKE_PROBABILITY": "1.7",
            "TWEETGATE_RETWEET_PROBABILITY": "-0.2",
            "TWEETGATE_TOPICS": "rust, , python ",
            "TWEETGATE_LOG_PATH": "logs/agent.log",
            "SERVER_PORT": "8088",
        }
        with patch.dict(os.environ, env, clear=True):
            cfg = load_config()

        self.assertEqual(cfg.twitter_username, "gatebot")
        self.assertEqual(cfg.agent_name, "gatebot")
        self.assertTrue(cfg.dry_run)
        self.assertEqual(cfg.approval_store, "memory")
        self.assertEqual((cfg.poll_seconds_min, cfg.poll_seconds_max), (120, 120))
        self.assertEqual(cfg.like_probability, 1.0)
        self.assertEqual(cfg.retweet_probability, 0.0)
        self.assertEqual(cfg.topics, ["rust", "python"])
        self.assertEqual(cfg.log_path, Path("logs/agent.log"))
        self.assertEqual(cfg.webhook_port, 8088)

    def test_attempt_counts_are_at_least_one(self) -> None:
        env = {"TWEETGATE_REQUEST_MAX_ATTEMPTS": "0", "TWEETGATE_EXECUTOR_RESOLVE_ATTEMPTS": "-2"}
        with patch.dict(os.environ, env, clear=True):
            cfg = load_config()

        self.assertEqual(cfg.request_max_attempts, 1)
        self.assertEqual(cfg.executor_resolve_attempts, 1)

    def test_unknown_store_falls_back_to_sheets(self) -> None:
        with patch.dict(os.environ, {"TWEETGATE_APPROVAL_STORE": "airtable"}, clear=True):
            self.assertEqual(load_config().approval_store, "sheets")


if __name__ == "__main__":
    unittest.main()
