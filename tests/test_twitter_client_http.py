import json
import os
import time
import unittest
from unittest.mock import patch

from requests import exceptions as requests_exceptions

from tweetgate.twitter_client import (
    TwitterAPIError,
    TwitterAuthError,
    TwitterClient,
    TwitterCredentials,
    TwitterRateLimitError,
    normalize_tweets,
)


class _Resp:
    def __init__(self, status_code=200, payload=None, text="", headers=None):
        self.status_code = status_code
        self._payload = payload if payload is not None else {}
        self.text = text
        self.headers = headers or {}

    def json(self):
        return self._payload


SEARCH_PAYLOAD = {
    "data": [
        {
            "id": "101",
            "text": "@gatebot what do you think?",
            "author_id": "7",
            "conversation_id": "100",
            "referenced_tweets": [{"type": "replied_to", "id": "100"}],
        },
        {"id": "102", "text": "hello @gatebot", "author_id": "8", "conversation_id": "102"},
    ],
    "includes": {"users": [{"id": "7", "username": "alice", "name": "Alice"}]},
}


class TwitterClientHttpTests(unittest.TestCase):
    def _client(self):
        return TwitterClient(credentials=TwitterCredentials(access_token="t0ken", username="gatebot"))

    @patch("tweetgate.twitter_client.requests.request")
    def test_create_reply_sends_reply_payload(self, mock_request):
        mock_request.return_value = _Resp(201, {"data": {"id": "555", "text": "hi"}})

        tweet = self._client().create_tweet("hi", in_reply_to="100")

        self.assertEqual(tweet["id"], "555")
        args, kwargs = mock_request.call_args
        self.assertEqual(args[0], "POST")
        self.assertEqual(args[1], "https://api.twitter.com/2/tweets")
        self.assertEqual(json.loads(kwargs["data"]), {"text": "hi", "reply": {"in_reply_to_tweet_id": "100"}})
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer t0ken")

    @patch("tweetgate.twitter_client.requests.request")
    def test_search_clamps_max_results_and_normalizes(self, mock_request):
        mock_request.return_value = _Resp(200, SEARCH_PAYLOAD)

        tweets = self._client().search_recent("@gatebot", max_results=3, since_id="99")

        params = mock_request.call_args.kwargs["params"]
        self.assertEqual(params["max_results"], 10)
        self.assertEqual(params["since_id"], "99")
        self.assertEqual([t["id"] for t in tweets], ["101", "102"])
        self.assertEqual(tweets[0]["username"], "alice")
        self.assertEqual(tweets[0]["in_reply_to_id"], "100")
        self.assertEqual(tweets[0]["permanent_url"], "https://twitter.com/alice/status/101")
        self.assertEqual(tweets[1]["username"], "")

    @patch("tweetgate.twitter_client.requests.request")
    def test_auth_errors(self, mock_request):
        mock_request.return_value = _Resp(401, {"title": "Unauthorized", "detail": "bad token"})

        with self.assertRaises(TwitterAuthError) as ctx:
            self._client().get_me()
        self.assertIn("bad token", str(ctx.exception))

    @patch("tweetgate.twitter_client.requests.request")
    def test_rate_limit_carries_retry_after(self, mock_request):
        reset = str(int(time.time()) + 120)
        mock_request.return_value = _Resp(429, {"title": "Too Many Requests"}, headers={"x-rate-limit-reset": reset})

        with self.assertRaises(TwitterRateLimitError) as ctx:
            self._client().like_tweet("42", "101")
        self.assertGreater(ctx.exception.retry_after, 60)
        self.assertEqual(ctx.exception.status_code, 429)

    @patch("tweetgate.twitter_client.requests.request")
    def test_other_errors_use_first_error_detail(self, mock_request):
        mock_request.return_value = _Resp(400, {"errors": [{"message": "Invalid tweet id"}]})

        with self.assertRaises(TwitterAPIError) as ctx:
            self._client().retweet("42", "nope")
        self.assertEqual(ctx.exception.status_code, 400)
        self.assertIn("Invalid tweet id", str(ctx.exception))

    @patch("tweetgate.twitter_client.requests.request")
    def test_timeout_is_reported(self, mock_request):
        mock_request.side_effect = requests_exceptions.Timeout("slow")

        with self.assertRaises(RuntimeError) as ctx:
            self._client().get_me()
        self.assertIn("Timed out", str(ctx.exception))

    @patch("tweetgate.twitter_client.requests.request")
    def test_direct_message_endpoint(self, mock_request):
        mock_request.return_value = _Resp(201, {"data": {"dm_event_id": "e1", "dm_conversation_id": "c1"}})

        event = self._client().send_direct_message("777", "hello")

        self.assertEqual(event["dm_event_id"], "e1")
        self.assertEqual(mock_request.call_args.args[1], "https://api.twitter.com/2/dm_conversations/with/777/messages")

    def test_empty_text_is_rejected_locally(self):
        with self.assertRaises(ValueError):
            self._client().create_tweet("   ")

    def test_base_url_override_is_limited_to_official_hosts(self):
        with patch.dict(os.environ, {"TWITTER_API_BASE": "https://evil.example/2"}):
            self.assertEqual(self._client().base_url, "https://api.twitter.com/2")
        with patch.dict(os.environ, {"TWITTER_API_BASE": "https://api.x.com/2/"}):
            self.assertEqual(self._client().base_url, "https://api.x.com/2")


class TwitterCredentialsTests(unittest.TestCase):
    def test_env_token_wins(self):
        env = {"TWITTER_ACCESS_TOKEN": " abc ", "TWITTER_USERNAME": "@gatebot", "TWITTER_SKIP_AUTH_VALIDATION": ""}
        with patch.dict(os.environ, env):
            creds = TwitterCredentials.load()
        self.assertEqual(creds.access_token, "abc")
        self.assertEqual(creds.username, "gatebot")

    def test_missing_token_raises(self):
        env = {"TWITTER_ACCESS_TOKEN": "", "TWITTER_SKIP_AUTH_VALIDATION": ""}
        with patch.dict(os.environ, env), patch("tweetgate.twitter_client.CREDENTIALS_PATH") as path:
            path.exists.return_value = False
            with self.assertRaises(TwitterAuthError):
                TwitterCredentials.load()


class NormalizeTweetsTests(unittest.TestCase):
    def test_single_object_payload(self):
        tweets = normalize_tweets({"data": {"id": "5", "text": "solo"}})
        self.assertEqual(len(tweets), 1)
        self.assertEqual(tweets[0]["permanent_url"], "https://twitter.com/i/status/5")

    def test_missing_data(self):
        self.assertEqual(normalize_tweets({}), [])


if __name__ == "__main__":
    unittest.main()
