import io
import unittest
from unittest.mock import patch
from urllib import error

from labingest import llm_provider


class TestOpenAiResponseParsing(unittest.TestCase):
    def test_extracts_top_level_output_text(self):
        payload = {"output_text": '{"summary": "ok"}'}

        text = llm_provider._extract_openai_text(payload)

        self.assertEqual(text, '{"summary": "ok"}')

    def test_extracts_text_from_output_content(self):
        payload = {
            "output": [
                {
                    "type": "message",
                    "content": [
                        {"type": "output_text", "text": '{"summary": "ok"}'},
                    ],
                }
            ]
        }

        text = llm_provider._extract_openai_text(payload)

        self.assertEqual(text, '{"summary": "ok"}')

    def test_generate_json_with_openai_requests_json_object_format(self):
        captured = {}

        def _fake_post_json(url, payload, headers, timeout):
            captured.update(url=url, payload=payload, headers=headers, timeout=timeout)
            return {"output_text": "{}"}

        with patch("labingest.llm_provider._post_json", side_effect=_fake_post_json):
            result = llm_provider.generate_json_with_openai(
                api_key="test-key",
                model="gpt-4.1-mini",
                prompt="Analyze",
                instructions="You are a chemist.",
                timeout=12,
            )

        self.assertEqual(result.status, "success")
        self.assertEqual(captured["url"], llm_provider.OPENAI_RESPONSES_URL)
        self.assertEqual(captured["payload"]["text"], {"format": {"type": "json_object"}})
        self.assertEqual(captured["payload"]["instructions"], "You are a chemist.")
        self.assertEqual(captured["headers"]["Authorization"], "Bearer test-key")
        self.assertEqual(captured["timeout"], 12)

    def test_generate_json_with_openai_returns_error_for_missing_text(self):
        with patch("labingest.llm_provider._post_json", return_value={"output": []}):
            result = llm_provider.generate_json_with_openai(
                api_key="test-key",
                model="gpt-4.1-mini",
                prompt="Analyze",
            )

        self.assertEqual(result.status, "error")
        self.assertIn("extractable text content", result.warnings[0])

    def test_http_error_message_is_surfaced(self):
        http_error = error.HTTPError(
            url=llm_provider.OPENAI_RESPONSES_URL,
            code=429,
            msg="Too Many Requests",
            hdrs=None,
            fp=io.BytesIO(b'{"error": {"message": "Rate limit reached"}}'),
        )

        with patch("labingest.llm_provider._post_json", side_effect=http_error):
            result = llm_provider.generate_json_with_openai(
                api_key="test-key",
                model="gpt-4.1-mini",
                prompt="Analyze",
            )

        self.assertEqual(result.status, "error")
        self.assertEqual(result.warnings, ["OpenAI request failed with HTTP 429: Rate limit reached"])

    def test_timeout_is_reported(self):
        with patch("labingest.llm_provider._post_json", side_effect=TimeoutError()):
            result = llm_provider.generate_json_with_openai(
                api_key="test-key",
                model="gpt-4.1-mini",
                prompt="Analyze",
                timeout=5,
            )

        self.assertEqual(result.status, "error")
        self.assertIn("timed out after 5 seconds", result.warnings[0])


class TestGeminiResponseParsing(unittest.TestCase):
    def test_generate_json_with_gemini_collects_all_parts(self):
        payload = {
            "candidates": [
                {
                    "content": {
                        "parts": [
                            {"text": '{"summary":'},
                            {"text": '"ok"}'},
                        ]
                    }
                }
            ]
        }

        with patch("labingest.llm_provider._post_json", return_value=payload):
            result = llm_provider.generate_json_with_gemini(
                api_key="test-key",
                model="gemini-1.5-flash",
                prompt="Analyze",
            )

        self.assertEqual(result.status, "success")
        self.assertEqual(result.raw_response, '{"summary":\n"ok"}')

    def test_generate_json_with_gemini_requests_json_mime_type(self):
        captured = {}

        def _fake_post_json(url, payload, _headers, timeout):
            captured.update(url=url, payload=payload)
            return {"candidates": []}

        with patch("labingest.llm_provider._post_json", side_effect=_fake_post_json):
            result = llm_provider.generate_json_with_gemini(
                api_key="test-key",
                model="gemini-1.5-flash",
                prompt="Analyze",
                instructions="You are a chemist.",
            )

        self.assertEqual(result.status, "error")
        self.assertTrue(captured["url"].endswith("gemini-1.5-flash:generateContent?key=test-key"))
        self.assertEqual(captured["payload"]["generationConfig"]["responseMimeType"], "application/json")
        self.assertEqual(
            captured["payload"]["systemInstruction"],
            {"parts": [{"text": "You are a chemist."}]},
        )


if __name__ == "__main__":
    unittest.main()
