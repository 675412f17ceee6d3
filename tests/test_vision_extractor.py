import json
import unittest
from unittest.mock import patch, MagicMock
import sys
import os

import requests

# srcディレクトリをパスに追加
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', 'src')))

from vision_extractor import LOW_CONFIDENCE_FLOOR, VisionPaymentExtractor, parse_payload
from verification_errors import ExtractionError


GOOD_PAYLOAD = {
    "payment_method": "GCash",
    "amount": 1500,
    "currency": "PHP",
    "sender_info": "Juan Dela Cruz",
    "recipient_info": "Ana's Pasabuy",
    "reference_number": "GC123456789",
    "confidence": 0.92,
    "reasoning": "GCash express send receipt",
}


def _chat_response(content, status_code=200):
    resp = MagicMock()
    resp.status_code = status_code
    resp.text = content if isinstance(content, str) else ""
    resp.json.return_value = {"choices": [{"message": {"role": "assistant", "content": content}}]}
    return resp


class TestParsePayload(unittest.TestCase):
    """payment_proof_v1 スキーマ検証"""

    def test_valid_payload(self):
        result = parse_payload(json.dumps(GOOD_PAYLOAD))
        self.assertFalse(result.low_confidence)
        self.assertEqual(result.fields["amount"], "1500")
        self.assertEqual(result.fields["reference_number"], "GC123456789")
        self.assertNotIn("confidence", result.fields)
        self.assertAlmostEqual(result.confidence, 0.92)
        self.assertEqual(result.raw_description, "GCash express send receipt")

    def test_code_fence_and_percent_confidence(self):
        payload = dict(GOOD_PAYLOAD, confidence=85)
        result = parse_payload("```json\n" + json.dumps(payload) + "\n```")
        self.assertAlmostEqual(result.confidence, 0.85)

    def test_null_fields_are_kept(self):
        payload = dict(GOOD_PAYLOAD, sender_info=None, reference_number=None)
        result = parse_payload(json.dumps(payload))
        self.assertIn("sender_info", result.fields)
        self.assertIsNone(result.fields["sender_info"])

    def test_omitted_field_is_low_confidence(self):
        payload = dict(GOOD_PAYLOAD)
        del payload["reference_number"]
        result = parse_payload(json.dumps(payload))
        self.assertTrue(result.low_confidence)
        self.assertEqual(result.confidence, LOW_CONFIDENCE_FLOOR)
        self.assertEqual(result.fields, {})

    def test_garbage_is_low_confidence_not_exception(self):
        for content in ["I could not read this image", "[1, 2, 3]", json.dumps(dict(GOOD_PAYLOAD, confidence="high"))]:
            result = parse_payload(content)
            self.assertTrue(result.low_confidence)


class TestVisionPaymentExtractor(unittest.TestCase):

    def setUp(self):
        self.extractor = VisionPaymentExtractor("https://vision.local/v1/", "key", "test-model", timeout=15)

    @patch('vision_extractor.requests.post')
    def test_extract_payment_success_with_hints(self, mock_post):
        mock_post.return_value = _chat_response(json.dumps(GOOD_PAYLOAD))

        result = self.extractor.extract_payment(b"img", hints={"amount": "1500.00", "currency": "PHP", "reference": None})

        self.assertEqual(result.fields["payment_method"], "GCash")
        args, kwargs = mock_post.call_args
        self.assertEqual(args[0], "https://vision.local/v1/chat/completions")
        self.assertEqual(kwargs["timeout"], 15)
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer key")
        user_parts = kwargs["json"]["messages"][1]["content"]
        self.assertIn("amount=1500.00", user_parts[0]["text"])
        self.assertNotIn("reference=", user_parts[0]["text"])
        self.assertTrue(user_parts[1]["image_url"]["url"].startswith("data:image/jpeg;base64,"))

    @patch('vision_extractor.requests.post')
    def test_timeout_is_typed_error(self, mock_post):
        mock_post.side_effect = requests.Timeout("slow")
        with self.assertRaises(ExtractionError) as context:
            self.extractor.extract_payment(b"img")
        self.assertEqual(context.exception.extractor, "structured")
        self.assertTrue(context.exception.retryable)

    @patch('vision_extractor.requests.post')
    def test_non_2xx_is_typed_error(self, mock_post):
        mock_post.return_value = _chat_response("rate limited", status_code=429)
        with self.assertRaises(ExtractionError) as context:
            self.extractor.extract_payment(b"img")
        self.assertEqual(context.exception.status_code, 429)
        self.assertTrue(context.exception.retryable)

    @patch('vision_extractor.requests.post')
    def test_unparsable_body_is_low_confidence(self, mock_post):
        mock_post.return_value = _chat_response("not json at all")
        result = self.extractor.extract_payment(b"img")
        self.assertTrue(result.low_confidence)

    def test_missing_api_key(self):
        extractor = VisionPaymentExtractor("https://vision.local/v1", None, "m")
        with self.assertRaises(ExtractionError) as context:
            extractor.extract_payment(b"img")
        self.assertFalse(context.exception.retryable)


if __name__ == '__main__':
    unittest.main()
