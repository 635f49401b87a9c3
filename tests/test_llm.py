from __future__ import annotations

import base64
import json
import tempfile
import unittest
from datetime import date, datetime, timezone
from pathlib import Path
from unittest import mock

import requests

from healthflow.llm import (
    LOCAL_ENDPOINT,
    OPENAI_ENDPOINT,
    LlmRequestError,
    OpenAiCompatibleClient,
    RoutingLlmClient,
    build_analysis_prompt,
    build_daily_summary_prompt,
)
from healthflow.models import (
    DailySummaryMealContext,
    DailySummaryRequest,
    EntryType,
    LlmProvider,
    LlmRequestContext,
    PendingEntryPayload,
    TrackedEntry,
)
from healthflow.results import parse_meal_result

REPLY = json.dumps({"schemaVersion": "1.0", "entryType": "Other", "otherAnalysis": {"summary": "Desk"}})


class FakeResponse:
    def __init__(self, status_code: int = 200, body=None, text: str = ""):
        self.status_code = status_code
        self._body = body
        self.text = text

    def json(self):
        if isinstance(self._body, Exception):
            raise self._body
        return self._body


class FakeSession:
    def __init__(self, response: FakeResponse | None = None, error: Exception | None = None):
        self.response = response or FakeResponse(
            body={
                "choices": [{"message": {"content": REPLY}}],
                "usage": {"prompt_tokens": 120, "completion_tokens": 40, "total_tokens": 160},
            }
        )
        self.error = error
        self.posts: list[dict] = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.posts.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        if self.error is not None:
            raise self.error
        return self.response


def _entry(description: str | None = "coffee and a croissant", blob_path: str | None = None) -> TrackedEntry:
    return TrackedEntry(
        entry_id=7,
        entry_type=EntryType.UNKNOWN,
        captured_at=datetime(2026, 1, 15, 8, 0, tzinfo=timezone.utc),
        payload=PendingEntryPayload(description=description, preview_blob_path=blob_path),
        blob_path=blob_path,
    )


def _openai(api_key: str = "sk-test", endpoint: str = "") -> LlmRequestContext:
    return LlmRequestContext(model_id="gpt-4o-mini", provider=LlmProvider.OPENAI, api_key=api_key, endpoint=endpoint)


class OpenAiCompatibleClientTests(unittest.TestCase):
    def test_analysis_request_and_result(self) -> None:
        session = FakeSession()
        client = OpenAiCompatibleClient(timeout=30, session=session)

        result = client.invoke_analysis(_entry(), _openai())

        post = session.posts[0]
        self.assertEqual(post["url"], OPENAI_ENDPOINT)
        self.assertEqual(post["headers"], {"Authorization": "Bearer sk-test"})
        self.assertEqual(post["timeout"], 30)
        self.assertEqual(post["json"]["model"], "gpt-4o-mini")
        self.assertEqual(post["json"]["response_format"], {"type": "json_object"})
        user_content = post["json"]["messages"][1]["content"]
        self.assertEqual(len(user_content), 1)
        self.assertIn("coffee and a croissant", user_content[0]["text"])

        self.assertEqual(result.analysis.entry_id, 7)
        self.assertEqual(result.analysis.insights_json, REPLY)
        self.assertEqual(result.analysis.schema_version, "1.0")
        self.assertEqual(result.analysis.provider_id, "openai")
        self.assertEqual(result.diagnostics.total_token_count, 160)

    def test_image_is_attached_as_data_uri(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            image = Path(tmp_dir) / "entries" / "meal.png"
            image.parent.mkdir(parents=True)
            image.write_bytes(b"\x89PNGfake")
            session = FakeSession()

            with mock.patch.dict("os.environ", {"HEALTHFLOW_DATA_DIR": tmp_dir}):
                OpenAiCompatibleClient(session=session).invoke_analysis(_entry(blob_path="entries/meal.png"), _openai())

        image_part = session.posts[0]["json"]["messages"][1]["content"][1]
        expected = "data:image/png;base64," + base64.b64encode(b"\x89PNGfake").decode("ascii")
        self.assertEqual(image_part, {"type": "image_url", "image_url": {"url": expected}})

    def test_missing_image_file_sends_text_only(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            session = FakeSession()
            with mock.patch.dict("os.environ", {"HEALTHFLOW_DATA_DIR": tmp_dir}):
                OpenAiCompatibleClient(session=session).invoke_analysis(_entry(blob_path="entries/gone.jpg"), _openai())

        self.assertEqual(len(session.posts[0]["json"]["messages"][1]["content"]), 1)

    def test_custom_endpoint_is_used(self) -> None:
        session = FakeSession()
        OpenAiCompatibleClient(session=session).invoke_analysis(
            _entry(), _openai(endpoint=" https://proxy.example/v1/chat/completions ")
        )
        self.assertEqual(session.posts[0]["url"], "https://proxy.example/v1/chat/completions")

    def test_local_provider_needs_no_key(self) -> None:
        session = FakeSession()
        context = LlmRequestContext(model_id="llava", provider=LlmProvider.LOCAL, api_key="")

        result = OpenAiCompatibleClient(session=session).invoke_analysis(_entry(), context)

        self.assertEqual(session.posts[0]["url"], LOCAL_ENDPOINT)
        self.assertEqual(session.posts[0]["headers"], {})
        self.assertEqual(result.analysis.model, "llava")

    def test_missing_key_fails_before_request(self) -> None:
        session = FakeSession()
        with self.assertRaises(LlmRequestError):
            OpenAiCompatibleClient(session=session).invoke_analysis(_entry(), _openai(api_key=" "))
        self.assertEqual(session.posts, [])

    def test_http_error_status(self) -> None:
        session = FakeSession(FakeResponse(status_code=500, text="upstream exploded"))
        with self.assertRaises(LlmRequestError) as ctx:
            OpenAiCompatibleClient(session=session).invoke_analysis(_entry(), _openai())
        self.assertIn("500", str(ctx.exception))

    def test_transport_error(self) -> None:
        session = FakeSession(error=requests.ConnectionError("refused"))
        with self.assertRaises(LlmRequestError):
            OpenAiCompatibleClient(session=session).invoke_analysis(_entry(), _openai())

    def test_non_json_and_empty_responses(self) -> None:
        not_json = FakeSession(FakeResponse(body=ValueError("no json")))
        with self.assertRaises(LlmRequestError):
            OpenAiCompatibleClient(session=not_json).invoke_analysis(_entry(), _openai())

        no_choices = FakeSession(FakeResponse(body={"choices": []}))
        with self.assertRaises(LlmRequestError):
            OpenAiCompatibleClient(session=no_choices).invoke_analysis(_entry(), _openai())

    def test_content_parts_are_joined(self) -> None:
        body = {"choices": [{"message": {"content": [{"type": "text", "text": REPLY}]}}]}
        session = FakeSession(FakeResponse(body=body))

        result = OpenAiCompatibleClient(session=session).invoke_analysis(_entry(), _openai())

        self.assertEqual(result.analysis.insights_json, REPLY)
        self.assertIsNone(result.diagnostics)

    def test_daily_summary_request(self) -> None:
        session = FakeSession()
        request = DailySummaryRequest(summary_entry_id=42, summary_date=date(2026, 1, 15), time_zone_id="UTC")

        result = OpenAiCompatibleClient(session=session).invoke_daily_summary(request, _openai(), '{"old": true}')

        text = session.posts[0]["json"]["messages"][1]["content"][0]["text"]
        self.assertIn("Date: 2026-01-15", text)
        self.assertIn('Previous summary JSON (replace it entirely): {"old": true}', text)
        self.assertEqual(result.analysis.entry_id, 42)


class RoutingLlmClientTests(unittest.TestCase):
    def test_unknown_provider_raises(self) -> None:
        client = RoutingLlmClient({LlmProvider.OPENAI: OpenAiCompatibleClient(session=FakeSession())})
        context = LlmRequestContext(model_id="gemini-1.5-flash", provider=LlmProvider.GEMINI, api_key="key")
        with self.assertRaises(LlmRequestError):
            client.invoke_analysis(_entry(), context)

    def test_routes_by_provider(self) -> None:
        session = FakeSession()
        client = RoutingLlmClient({LlmProvider.OPENAI: OpenAiCompatibleClient(session=session)})
        client.invoke_analysis(_entry(), _openai())
        self.assertEqual(len(session.posts), 1)


class PromptTests(unittest.TestCase):
    def test_analysis_prompt_with_correction(self) -> None:
        prompt = build_analysis_prompt(_entry(), '{"entryType": "Meal"}', "  It was tea, not coffee ")
        self.assertIn("User description: coffee and a croissant", prompt)
        self.assertIn('Previous analysis JSON: {"entryType": "Meal"}', prompt)
        self.assertIn("User correction: It was tea, not coffee", prompt)
        self.assertNotIn("Current category", prompt)

    def test_analysis_prompt_without_description(self) -> None:
        prompt = build_analysis_prompt(_entry(description="  "))
        self.assertNotIn("User description", prompt)
        self.assertNotIn("User correction", prompt)

    def test_daily_summary_prompt_lists_meals(self) -> None:
        meal = parse_meal_result(
            json.dumps(
                {
                    "foodItems": [{"name": "Oatmeal", "portionSize": "1 bowl", "calories": 300, "confidence": 0.9}],
                    "nutrition": {"totalCalories": 300, "protein": 10},
                    "healthInsights": {"healthScore": 8, "summary": "Fiber rich."},
                }
            )
        )
        captured = datetime(2026, 1, 15, 13, 5, tzinfo=timezone.utc)
        request = DailySummaryRequest(
            summary_entry_id=9,
            summary_date=date(2026, 1, 15),
            offset_minutes=60,
            meals=[
                DailySummaryMealContext(
                    entry_id=3,
                    captured_at_utc=captured,
                    captured_at_local=captured,
                    time_zone_id=None,
                    offset_minutes=60,
                    description="breakfast",
                    analysis=meal,
                )
            ],
        )

        prompt = build_daily_summary_prompt(request)

        self.assertIn("UTC offset minutes: 60", prompt)
        self.assertIn("- entryId=3 at 13:05:", prompt)
        self.assertIn("foods=Oatmeal", prompt)
        self.assertIn("assessment=Fiber rich.", prompt)
        self.assertNotIn("Previous summary JSON", prompt)

    def test_daily_summary_prompt_without_meals(self) -> None:
        request = DailySummaryRequest(summary_entry_id=9, summary_date=date(2026, 1, 15))
        self.assertIn("No completed meals were logged for this day.", build_daily_summary_prompt(request))


if __name__ == "__main__":
    unittest.main()
