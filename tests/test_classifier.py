"""
Tests for message classification.

Test Coverage:
- Weighted personal/general indicators and the strong-personal floor
- Remote classifier retries with exponential backoff (recorded sleep)
- Fallback to local rules once retries are exhausted
"""

import json
import unittest

import httpx
import pytest

from fakes import RecordingSleep


@pytest.mark.unit
class TestClassifyMessage(unittest.TestCase):
    def test_strong_personal_question(self):
        from journal_rag.classifier import MessageCategory, classify_message

        result = classify_message("Am I an introvert?")
        self.assertEqual(result.category, MessageCategory.JOURNAL_SPECIFIC)
        self.assertEqual(result.confidence, 1.0)
        self.assertTrue(result.should_use_journal)

    def test_explicit_journal_reference(self):
        from journal_rag.classifier import MessageCategory, classify_message

        result = classify_message("Have I written about my sister?")
        self.assertEqual(result.category, MessageCategory.JOURNAL_SPECIFIC)
        self.assertIn("Explicit reference to journal entries", result.reasoning)

    def test_definitional_question_is_general(self):
        from journal_rag.classifier import MessageCategory, classify_message

        result = classify_message("What is photosynthesis?")
        self.assertEqual(result.category, MessageCategory.GENERAL)
        self.assertAlmostEqual(result.confidence, 0.1)
        self.assertEqual(result.reasoning, "General definitional question")
        self.assertFalse(result.should_use_journal)

    def test_mental_health_topic_without_first_person(self):
        from journal_rag.classifier import MessageCategory, classify_message

        result = classify_message("What is anxiety?")
        self.assertEqual(result.category, MessageCategory.GENERAL)
        self.assertEqual(result.confidence, 0.0)
        self.assertIn("Mental health topic without personal context", result.reasoning)

    def test_default_reasoning(self):
        from journal_rag.classifier import classify_message

        result = classify_message("Tell me a story about dragons")
        self.assertEqual(result.reasoning, "Query appears to be seeking general information")

    def test_confidence_above_half_uses_journal(self):
        from journal_rag.classifier import Classification, MessageCategory

        self.assertTrue(Classification(MessageCategory.GENERAL, 0.6, "").should_use_journal)


def _classifier(handler, sleep):
    from journal_rag.classifier import MessageClassifier

    return MessageClassifier(
        remote_url="https://classifier.test/classify",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        sleep=sleep,
    )


@pytest.mark.asyncio
class TestMessageClassifier:
    async def test_local_rules_without_remote(self):
        from journal_rag.classifier import MessageClassifier

        result = await MessageClassifier().classify("Am I an introvert?")
        assert result.source == "rules"

    async def test_empty_message_rejected(self):
        from journal_rag.classifier import MessageClassifier
        from journal_rag.errors import InvalidInputError

        with pytest.raises(InvalidInputError):
            await MessageClassifier().classify("  ")

    async def test_remote_success(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"category": "GENERAL", "confidence": 0.9, "reasoning": "trivia"})

        sleep = RecordingSleep()
        classifier = _classifier(handler, sleep)
        result = await classifier.classify("Who painted the Mona Lisa?")

        assert result.source == "remote"
        assert result.reasoning == "trivia"
        assert seen["body"] == {"message": "Who painted the Mona Lisa?"}
        assert sleep.delays == []

    async def test_retries_with_exponential_backoff(self):
        responses = iter([
            httpx.Response(503),
            httpx.Response(503),
            httpx.Response(200, json={"category": "JOURNAL_SPECIFIC", "confidence": 0.8}),
        ])
        sleep = RecordingSleep()
        classifier = _classifier(lambda request: next(responses), sleep)

        result = await classifier.classify("How did I sleep?")

        assert result.source == "remote"
        assert classifier.remote_attempts == 3
        assert sleep.delays == [1.0, 2.0]

    async def test_exhausted_retries_fall_back_to_rules(self):
        sleep = RecordingSleep()
        classifier = _classifier(lambda request: httpx.Response(500), sleep)

        result = await classifier.classify("Am I an introvert?")

        assert result.source == "rules"
        assert classifier.remote_attempts == 3
        assert sleep.delays == [1.0, 2.0]

    async def test_malformed_response_is_retried(self):
        sleep = RecordingSleep()
        classifier = _classifier(lambda request: httpx.Response(200, json={"category": "UNKNOWN"}), sleep)

        result = await classifier.classify("What is photosynthesis?")

        assert result.source == "rules"
        assert classifier.remote_attempts == 3

    async def test_transport_errors_are_retried(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        sleep = RecordingSleep()
        classifier = _classifier(handler, sleep)
        result = await classifier.classify("Am I an introvert?")

        assert result.source == "rules"
        assert len(sleep.delays) == 2
