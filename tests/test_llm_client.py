"""Tests for the chat completion client."""

import json

import httpx
import pytest

from emailsnap.config import LLMConfig
from emailsnap.llm_client import LLMClient, LLMError, ProjectAssignment
from emailsnap.models import Message


def completion(content) -> httpx.Response:
    """A chat completion response wrapping `content`."""
    if not isinstance(content, str):
        content = json.dumps(content, ensure_ascii=False)
    return httpx.Response(200, json={"choices": [{"message": {"content": content}}]})


def create_client(handler, sleeps: list | None = None) -> LLMClient:
    sleeps = sleeps if sleeps is not None else []
    return LLMClient(
        LLMConfig(),
        api_key="gsk_test",
        transport=httpx.MockTransport(handler),
        sleep=sleeps.append,
    )


def create_test_message(id: str, subject: str) -> Message:
    return Message(
        id=id,
        sender_name="",
        sender_email="kim@company.com",
        subject=subject,
        received_at="2024-01-01T00:00:00+00:00",
    )


class TestCall:
    def test_request_shape(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return completion({"category": "urgent", "confidence": 0.9, "reason": ""})

        with create_client(handler) as client:
            client.call("system", "user")

        assert seen["url"] == "https://api.groq.com/openai/v1/chat/completions"
        assert seen["auth"] == "Bearer gsk_test"
        assert seen["body"]["model"] == "llama-3.3-70b-versatile"
        assert seen["body"]["temperature"] == 0.3
        assert seen["body"]["max_tokens"] == 1024
        assert seen["body"]["response_format"] == {"type": "json_object"}
        assert [m["role"] for m in seen["body"]["messages"]] == ["system", "user"]

    def test_rate_limit_retried_twice(self):
        calls = []

        def handler(request):
            calls.append(1)
            if len(calls) <= 2:
                return httpx.Response(429, text="slow down")
            return completion("{}")

        sleeps: list[float] = []
        client = create_client(handler, sleeps)
        assert client.call("s", "u") == "{}"
        assert sleeps == [10.0, 10.0]

    def test_rate_limit_gives_up(self):
        sleeps: list[float] = []
        client = create_client(lambda r: httpx.Response(429, text="slow down"), sleeps)

        with pytest.raises(LLMError, match="429"):
            client.call("s", "u")
        assert len(sleeps) == 2

    def test_server_error(self):
        client = create_client(lambda r: httpx.Response(500, text="oops"))
        with pytest.raises(LLMError, match="500"):
            client.call("s", "u")

    def test_empty_choices(self):
        client = create_client(lambda r: httpx.Response(200, json={"choices": []}))
        with pytest.raises(LLMError, match="Empty"):
            client.call("s", "u")

    def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(LLMError, match="Request failed"):
            create_client(handler).call("s", "u")


class TestClassify:
    def test_classify_message(self):
        client = create_client(
            lambda r: completion({"category": "approval", "confidence": 0.85, "reason": "결재 요청"})
        )
        response = client.classify_message("[결재] 구매 요청", "kim@company.com")

        assert response.success
        assert response.result.category == "approval"
        assert response.result.confidence == 0.85

    def test_markdown_fenced_json(self):
        client = create_client(
            lambda r: completion('```json\n{"category": "system", "confidence": 0.8}\n```')
        )
        response = client.classify_message("알림", "noreply@x.com")
        assert response.success
        assert response.result.category == "system"
        assert response.result.reason == ""

    def test_null_fields_tolerated(self):
        client = create_client(
            lambda r: completion({"category": "external", "confidence": None, "reason": None})
        )
        response = client.classify_message("hello", "a@b.com")
        assert response.success
        assert response.result.confidence == 0.0

    def test_invalid_json_is_failed_response(self):
        client = create_client(lambda r: completion("not json"))
        response = client.classify_message("hello", "a@b.com")
        assert not response.success
        assert "Invalid response format" in response.error

    def test_http_failure_is_failed_response(self):
        client = create_client(lambda r: httpx.Response(401, text="bad key"))
        response = client.classify_message("hello", "a@b.com")
        assert not response.success
        assert "401" in response.error

    def test_batch_results_in_order(self):
        client = create_client(
            lambda r: completion(
                {
                    "results": [
                        {"category": "urgent", "confidence": 0.9, "reason": ""},
                        {"category": "internal", "confidence": 0.8, "reason": ""},
                    ]
                }
            )
        )
        response = client.classify_batch(
            [create_test_message("1", "[긴급] 장애"), create_test_message("2", "회의")]
        )
        assert [r.category for r in response.result] == ["urgent", "internal"]

    def test_batch_bare_object(self):
        client = create_client(lambda r: completion({"category": "urgent", "confidence": 0.9}))
        response = client.classify_batch([create_test_message("1", "[긴급] 장애")])
        assert len(response.result) == 1

    def test_batch_invalid_item_kept_as_none(self):
        client = create_client(
            lambda r: completion(
                {
                    "results": [
                        {"category": "urgent", "confidence": 0.95},
                        {"category": "urgent", "confidence": 1.5},
                    ]
                }
            )
        )
        response = client.classify_batch(
            [create_test_message("1", "[긴급] 장애"), create_test_message("2", "회의")]
        )
        assert response.success
        assert response.result[0].confidence == 0.95
        assert response.result[1] is None


class TestAnalyzeProjects:
    def test_prompt_lists_projects_and_mail(self):
        seen = {}

        def handler(request):
            seen["user"] = json.loads(request.content)["messages"][1]["content"]
            return completion({"assignments": []})

        create_client(handler).analyze_projects([create_test_message("42", "인프라 견적")], ["채용"])

        assert "- 채용" in seen["user"]
        assert "[42] 인프라 견적" in seen["user"]

    def test_parses_assignments(self):
        client = create_client(
            lambda r: completion(
                {
                    "assignments": [
                        {"mail_id": 42, "project_name": " 인프라 구축 ", "keywords": ["서버"]},
                        {"mail_id": "43", "project_name": None},
                    ]
                }
            )
        )
        response = client.analyze_projects([], [])

        assert response.success
        assert response.result == [
            ProjectAssignment(mail_id="42", project_name="인프라 구축", keywords=["서버"]),
            ProjectAssignment(mail_id="43", project_name="", keywords=[]),
        ]


class TestHealth:
    def test_check_health(self):
        client = create_client(lambda r: httpx.Response(200, json={"data": []}))
        assert client.check_health() is True

    def test_check_health_failure(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        assert create_client(handler).check_health() is False
