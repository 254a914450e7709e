"""LLM client for an OpenAI-compatible chat completion API (Groq)."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable

import httpx
from pydantic import BaseModel, Field, ValidationError, field_validator

if TYPE_CHECKING:
    from emailsnap.config import LLMConfig

logger = logging.getLogger(__name__)


class ClassificationResult(BaseModel):
    """LLM classification output schema."""

    category: str
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    reason: str = ""

    @field_validator("confidence", mode="before")
    @classmethod
    def _null_confidence(cls, value: Any) -> Any:
        return 0.0 if value is None else value

    @field_validator("reason", mode="before")
    @classmethod
    def _null_reason(cls, value: Any) -> Any:
        return "" if value is None else value


class ProjectAssignment(BaseModel):
    """One message-to-project assignment from the project analysis."""

    mail_id: str
    project_name: str = ""
    keywords: list[str] = Field(default_factory=list)

    @field_validator("mail_id", mode="before")
    @classmethod
    def _mail_id_as_str(cls, value: Any) -> Any:
        return str(value) if isinstance(value, int) else value

    @field_validator("project_name", mode="before")
    @classmethod
    def _null_project(cls, value: Any) -> Any:
        if value is None:
            return ""
        return value.strip() if isinstance(value, str) else value


@dataclass
class LLMResponse:
    """Container for LLM response with metadata."""

    success: bool
    result: (
        ClassificationResult
        | list[ClassificationResult | None]
        | list[ProjectAssignment]
        | None
    )
    raw_response: str
    error: str | None = None


class LLMError(Exception):
    """The remote call failed or returned nothing usable."""


CLASSIFICATION_SYSTEM_PROMPT = """너는 이메일 분류 전문가야. 이메일 제목과 발신자 정보를 보고 카테고리를 분류해줘.

카테고리 종류:
- urgent: 긴급한 메일 (장애, 긴급 요청, 즉시 처리 필요)
- approval: 결재/승인 관련 메일
- external: 외부 발신 메일
- internal: 내부 업무 메일
- system: 시스템 자동 발송 메일 (알림, 노티피케이션)
- uncategorized: 분류 불가

반드시 아래 JSON 형식으로 응답해:
{
  "category": "카테고리명",
  "confidence": 0.0~1.0,
  "reason": "분류 이유 한 줄"
}"""

BATCH_CLASSIFICATION_SYSTEM_PROMPT = CLASSIFICATION_SYSTEM_PROMPT + """

여러 메일이 주어지면 각각 분류해서 입력 순서대로 배열로 응답해:
{ "results": [ { "category": "...", "confidence": 0.0~1.0, "reason": "..." }, ... ] }"""

PROJECT_SYSTEM_PROMPT = """너는 업무 메일을 프로젝트 단위로 묶는 전문가야. 메일 제목 목록을 보고 각 메일이 어떤 프로젝트(진행 중인 업무 주제)에 속하는지 판단해줘.

규칙:
1. 기존 프로젝트 목록에 맞는 주제가 있으면 반드시 그 이름을 글자 그대로 사용해. 비슷한 새 이름을 만들지 마.
2. 기존 프로젝트 중 어디에도 맞지 않을 때만 새 프로젝트 이름을 만들어. 이름은 짧고 구체적으로.
3. 각 프로젝트를 대표하는 키워드를 3~5개 뽑아줘 (제목에 실제로 등장하는 단어 위주).
4. 어떤 프로젝트에도 속하지 않는 메일은 project_name을 빈 문자열로 둬.

반드시 아래 JSON 형식으로 응답해:
{
  "assignments": [
    { "mail_id": "메일 ID", "project_name": "프로젝트 이름", "keywords": ["키워드1", "키워드2", "키워드3"] }
  ]
}"""


class LLMClient:
    """Client for an OpenAI-compatible chat completion endpoint."""

    def __init__(
        self,
        config: LLMConfig,
        api_key: str,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize the LLM client."""
        self.config = config
        self.api_key = api_key
        self._transport = transport
        self._sleep = sleep
        self._client: httpx.Client | None = None

    def _get_client(self) -> httpx.Client:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.Client(
                base_url=self.config.base_url,
                timeout=self.config.timeout,
                transport=self._transport,
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
        return self._client

    def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            self._client.close()
            self._client = None

    def __enter__(self) -> LLMClient:
        """Context manager entry."""
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        """Context manager exit."""
        self.close()

    def check_health(self) -> bool:
        """Check if the API accepts our key."""
        try:
            response = self._get_client().get("/models")
            return response.status_code == 200
        except httpx.HTTPError as e:
            logger.warning(f"LLM health check failed: {e}")
            return False

    def call(self, system_prompt: str, user_prompt: str) -> str:
        """Send one chat completion request and return the message content.

        HTTP 429 is retried a bounded number of times.

        Raises:
            LLMError: On transport errors, non-2xx responses or an empty reply
        """
        payload = {
            "model": self.config.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": self.config.temperature,
            "max_tokens": self.config.max_tokens,
            "response_format": {"type": "json_object"},
        }

        attempts = 0
        while True:
            try:
                response = self._get_client().post("/chat/completions", json=payload)
            except httpx.TimeoutException as e:
                raise LLMError("Request timed out") from e
            except httpx.RequestError as e:
                raise LLMError(f"Request failed: {e}") from e

            if response.status_code == 429 and attempts < self.config.rate_limit_retries:
                attempts += 1
                logger.info(f"Rate limited, retrying in {self.config.rate_limit_wait:.0f}s")
                self._sleep(self.config.rate_limit_wait)
                continue

            if not response.is_success:
                raise LLMError(f"API error: {response.status_code} - {response.text[:200]}")

            try:
                data = response.json()
                return data["choices"][0]["message"]["content"]
            except (ValueError, KeyError, IndexError, TypeError) as e:
                raise LLMError("Empty response from LLM") from e

    def classify_message(self, subject: str, sender_email: str) -> LLMResponse:
        """Classify one message."""
        prompt = f"제목: {subject}\n발신자: {sender_email}"
        return self._request(
            CLASSIFICATION_SYSTEM_PROMPT,
            prompt,
            lambda data: ClassificationResult.model_validate(data),
        )

    def classify_batch(self, messages: list[Any]) -> LLMResponse:
        """Classify several messages in one call; results keep input order."""
        prompt = "\n".join(
            f"[{i + 1}] 제목: {m.subject} | 발신자: {m.sender_email}"
            for i, m in enumerate(messages)
        )
        return self._request(
            BATCH_CLASSIFICATION_SYSTEM_PROMPT, prompt, self._parse_batch_results
        )

    def analyze_projects(self, messages: list[Any], existing_names: list[str]) -> LLMResponse:
        """Group messages into existing or new projects with keywords."""
        parts = ["기존 프로젝트 목록:"]
        if existing_names:
            parts.extend(f"- {name}" for name in existing_names)
        else:
            parts.append("(없음)")
        parts.extend(["", "메일 목록:"])
        parts.extend(f"[{m.id}] {m.subject}" for m in messages)

        return self._request(
            PROJECT_SYSTEM_PROMPT, "\n".join(parts), self._parse_assignments
        )

    def _request(
        self,
        system_prompt: str,
        user_prompt: str,
        parse: Callable[[Any], Any],
    ) -> LLMResponse:
        """Call the LLM and validate its JSON into a result."""
        try:
            raw_response = self.call(system_prompt, user_prompt)
        except LLMError as e:
            return LLMResponse(success=False, result=None, raw_response="", error=str(e))

        try:
            data = json.loads(self._clean_json_response(raw_response))
            result = parse(data)
        except (json.JSONDecodeError, ValidationError, TypeError, AttributeError) as e:
            logger.warning(f"Failed to parse LLM response: {e}")
            return LLMResponse(
                success=False,
                result=None,
                raw_response=raw_response,
                error=f"Invalid response format: {e}",
            )

        return LLMResponse(success=True, result=result, raw_response=raw_response)

    def _parse_batch_results(self, data: Any) -> list[ClassificationResult | None]:
        """Parse a {"results": [...]} wrapper, or a bare single object.

        Items are validated one by one; an invalid item becomes None so the
        valid verdicts around it survive.
        """
        items = data.get("results") if isinstance(data, dict) else None
        if items is None:
            items = [data]
        results: list[ClassificationResult | None] = []
        for position, item in enumerate(items):
            try:
                results.append(ClassificationResult.model_validate(item))
            except ValidationError as e:
                logger.warning(f"Invalid AI result at position {position}: {e}")
                results.append(None)
        return results

    def _parse_assignments(self, data: Any) -> list[ProjectAssignment]:
        items = data.get("assignments", []) if isinstance(data, dict) else data
        return [ProjectAssignment.model_validate(item) for item in items]

    def _clean_json_response(self, response: str) -> str:
        """Clean markdown formatting from JSON response."""
        response = response.strip()
        if response.startswith("```json"):
            response = response[7:]
        if response.startswith("```"):
            response = response[3:]
        if response.endswith("```"):
            response = response[:-3]
        return response.strip()
