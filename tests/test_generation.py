import unittest
from unittest.mock import patch

from requests import exceptions as requests_exceptions

from presence.autonomy.config import load_config
from presence.autonomy.errors import FatalProviderError, TransientCollaboratorError
from presence.autonomy.generation import OpenAIGenerationClient, calculate_backoff, classify_fatal


class _Resp:
    def __init__(self, status_code=200, payload=None, text="", headers=None):
        self.status_code = status_code
        self._payload = payload if payload is not None else {}
        self.text = text
        self.headers = headers or {}

    def json(self):
        return self._payload


def _ok(content="hello", tool_calls=None):
    message = {"content": content}
    if tool_calls:
        message["tool_calls"] = tool_calls
    return _Resp(
        200,
        {
            "choices": [{"message": message, "finish_reason": "stop"}],
            "usage": {"prompt_tokens": 10, "completion_tokens": 3},
        },
    )


class GenerationClientTests(unittest.TestCase):
    def setUp(self):
        self.cfg = load_config()
        self.cfg.openai_api_key = "sk-test"
        self.cfg.openai_base_url = "https://llm.example/v1"
        self.cfg.openai_max_retries = 2
        self.sleeps = []
        self.client = OpenAIGenerationClient(self.cfg, sleep=self.sleeps.append)

    @patch("presence.autonomy.generation.requests.post")
    def test_parses_text_and_tool_calls(self, mock_post):
        mock_post.return_value = _ok(
            "  a reply  ",
            tool_calls=[{"id": "c1", "function": {"name": "social_reply", "arguments": '{"text": "hi"}'}}],
        )
        result = self.client.generate_sync("prompt", tools=[{"type": "function"}])
        self.assertEqual(result.text, "a reply")
        self.assertEqual(result.tool_calls, [{"id": "c1", "name": "social_reply", "arguments": {"text": "hi"}}])
        self.assertEqual(result.stop_reason, "stop")
        url = mock_post.call_args.args[0]
        self.assertEqual(url, "https://llm.example/v1/chat/completions")
        self.assertEqual(mock_post.call_args.kwargs["headers"]["Authorization"], "Bearer sk-test")

    @patch("presence.autonomy.generation.requests.post")
    def test_retries_rate_limit_honoring_retry_after(self, mock_post):
        mock_post.side_effect = [
            _Resp(429, {"error": {"message": "slow down"}}, headers={"retry-after": "3"}),
            _ok("done"),
        ]
        result = self.client.generate_sync("prompt")
        self.assertEqual(result.text, "done")
        self.assertEqual(self.sleeps, [3.0])

    @patch("presence.autonomy.generation.requests.post")
    def test_exhausted_retries_are_transient(self, mock_post):
        mock_post.return_value = _Resp(503, {"error": "unavailable"})
        with self.assertRaises(TransientCollaboratorError):
            self.client.generate_sync("prompt")
        self.assertEqual(mock_post.call_count, 3)
        self.assertEqual(len(self.sleeps), 2)

    @patch("presence.autonomy.generation.requests.post")
    def test_transport_errors_are_retried(self, mock_post):
        mock_post.side_effect = [requests_exceptions.ConnectionError("reset"), _ok("back")]
        self.assertEqual(self.client.generate_sync("prompt").text, "back")
        self.assertEqual(len(self.sleeps), 1)

    @patch("presence.autonomy.generation.requests.post")
    def test_billing_failure_is_fatal_without_retry(self, mock_post):
        mock_post.return_value = _Resp(402, {"error": {"message": "Payment required"}})
        with self.assertRaises(FatalProviderError) as ctx:
            self.client.generate_sync("prompt")
        self.assertEqual(ctx.exception.code, FatalProviderError.BILLING)
        self.assertIn("code=BILLING_ERROR", ctx.exception.diagnostic())
        self.assertEqual(mock_post.call_count, 1)

    @patch("presence.autonomy.generation.requests.post")
    def test_other_client_errors_are_plain_failures(self, mock_post):
        mock_post.return_value = _Resp(400, {"error": {"message": "bad request"}})
        with self.assertRaises(RuntimeError):
            self.client.generate_sync("prompt")

    def test_missing_key_is_fatal_auth(self):
        self.cfg.openai_api_key = None
        with self.assertRaises(FatalProviderError) as ctx:
            self.client.generate_sync("prompt")
        self.assertEqual(ctx.exception.code, FatalProviderError.AUTH)

    def test_classify_fatal(self):
        self.assertEqual(classify_fatal(401, "nope").code, FatalProviderError.AUTH)
        self.assertEqual(classify_fatal(403, "model").code, FatalProviderError.ACCESS_DENIED)
        self.assertEqual(classify_fatal(429, "insufficient_quota").code, FatalProviderError.BILLING)
        self.assertIsNone(classify_fatal(500, "oops"))

    def test_backoff_is_bounded(self):
        self.assertEqual(calculate_backoff(0, retry_after=120), 30.0)
        for attempt in range(10):
            self.assertLessEqual(calculate_backoff(attempt), 30.0 * 1.25)


if __name__ == "__main__":
    unittest.main()
