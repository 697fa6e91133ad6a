import json
import unittest
from types import SimpleNamespace
from unittest.mock import MagicMock

from openai import APIConnectionError

from credit_pipeline.analysis_engine import AnalysisEngine
from credit_pipeline.exceptions import AnalysisError


def _completion(content):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


def _client(content=None, error=None):
    client = MagicMock()
    if error is not None:
        client.chat.completions.create.side_effect = error
    else:
        client.chat.completions.create.return_value = _completion(content)
    return client


class AnalysisEngineTests(unittest.TestCase):
    def test_returns_parsed_document(self):
        payload = {"score": {"value": 551}, "negatives": []}
        engine = AnalysisEngine(client=_client(json.dumps(payload)), model="test-model", max_chars=100)

        self.assertEqual(engine.analyze("FICO Score 8 551"), payload)
        kwargs = _client_kwargs(engine)
        self.assertEqual(kwargs["model"], "test-model")
        self.assertEqual(kwargs["response_format"], {"type": "json_object"})

    def test_only_first_max_chars_are_sent(self):
        engine = AnalysisEngine(client=_client('{"negatives": []}'), model="m", max_chars=10)

        engine.analyze("0123456789TAIL-THAT-MUST-NOT-BE-SENT")

        user_message = _client_kwargs(engine)["messages"][1]["content"]
        self.assertIn("0123456789", user_message)
        self.assertNotIn("TAIL", user_message)

    def test_empty_content_raises(self):
        engine = AnalysisEngine(client=_client(""), model="m", max_chars=10)
        with self.assertRaises(AnalysisError) as ctx:
            engine.analyze("text")
        self.assertEqual(ctx.exception.reason, "analysis_failed: empty content")

    def test_no_choices_raises(self):
        client = MagicMock()
        client.chat.completions.create.return_value = SimpleNamespace(choices=[])
        engine = AnalysisEngine(client=client, model="m", max_chars=10)
        with self.assertRaises(AnalysisError):
            engine.analyze("text")

    def test_malformed_json_raises(self):
        engine = AnalysisEngine(client=_client("{not json"), model="m", max_chars=10)
        with self.assertRaises(AnalysisError) as ctx:
            engine.analyze("text")
        self.assertTrue(ctx.exception.reason.startswith("analysis_failed: invalid JSON"))

    def test_non_object_json_raises(self):
        engine = AnalysisEngine(client=_client("[1, 2, 3]"), model="m", max_chars=10)
        with self.assertRaises(AnalysisError):
            engine.analyze("text")

    def test_api_error_raises(self):
        error = APIConnectionError(request=MagicMock())
        engine = AnalysisEngine(client=_client(error=error), model="m", max_chars=10)
        with self.assertRaises(AnalysisError):
            engine.analyze("text")


def _client_kwargs(engine):
    return engine.client.chat.completions.create.call_args.kwargs


if __name__ == "__main__":
    unittest.main()
