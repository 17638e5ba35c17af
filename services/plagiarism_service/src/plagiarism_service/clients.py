from __future__ import annotations

import asyncio
import json

import httpx
from .config import settings
from .schemas import AIAnalysis, RiskLevel

MAX_CODE_CHARS = 4000


class AIServiceUnavailable(RuntimeError):
    pass


class AIServiceError(RuntimeError):
    pass


def build_prompt(code1: str, code2: str, similarity: float) -> str:
    return (
        "Analyse the similarity of two Python solutions and answer with a JSON object "
        "with the fields: reason, isCommonCode, plagiarismRisk (low/medium/high), analysis.\n"
        f"Similarity: {similarity:.1f}%\n"
        f"Code 1:\n```python\n{code1[:MAX_CODE_CHARS]}\n```\n"
        f"Code 2:\n```python\n{code2[:MAX_CODE_CHARS]}\n```"
    )


def parse_analysis(body: dict) -> AIAnalysis:
    try:
        content = body["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        raise AIServiceError("AI response has no content")
    if not content:
        raise AIServiceError("AI response has no content")

    # модели любят оборачивать JSON в ```json ... ```
    content = content.strip()
    if content.startswith("```"):
        content = content.strip("`")
        if content.lower().startswith("json"):
            content = content[4:]

    try:
        data = json.loads(content)
    except json.JSONDecodeError:
        raise AIServiceError("AI response is not valid JSON")
    if not isinstance(data, dict):
        raise AIServiceError("AI response is not a JSON object")

    risk = str(data.get("plagiarismRisk", "low")).upper()
    return AIAnalysis(
        similarity_reason=str(data.get("reason", "")),
        is_common_code=bool(data.get("isCommonCode", False)),
        risk_level=RiskLevel(risk) if risk in RiskLevel.__members__ else RiskLevel.LOW,
        explanation=str(data.get("analysis", "")),
    )


async def analyze_pair(
    code1: str,
    code2: str,
    similarity: float,
    transport: httpx.AsyncBaseTransport | None = None,
) -> AIAnalysis:
    if not settings.ai_api_key:
        raise AIServiceUnavailable("AI API key is not configured")

    url = f"{settings.ai_base_url.rstrip('/')}/chat/completions"
    payload = {
        "model": settings.ai_model,
        "messages": [{"role": "user", "content": build_prompt(code1, code2, similarity)}],
        "stream": False,
    }
    headers = {"Authorization": f"Bearer {settings.ai_api_key}"}

    delay = settings.ai_retry_delay_seconds
    attempts = max(1, settings.ai_retry_times)
    for attempt in range(1, attempts + 1):
        try:
            async with httpx.AsyncClient(timeout=settings.ai_timeout_seconds, transport=transport) as client:
                resp = await client.post(url, json=payload, headers=headers)
        except httpx.TimeoutException as e:
            raise AIServiceUnavailable(f"AI service timed out: {e}")
        except httpx.ConnectError as e:
            raise AIServiceUnavailable(str(e))

        # повторяем только 429 и 5xx
        if resp.status_code == 429 or resp.status_code >= 500:
            if attempt == attempts:
                raise AIServiceUnavailable(f"AI service error {resp.status_code}: {resp.text}")
            await asyncio.sleep(delay)
            delay *= 2
            continue

        if resp.status_code >= 400:
            raise AIServiceError(f"AI service error {resp.status_code}: {resp.text}")
        return parse_analysis(resp.json())

    raise AIServiceUnavailable("AI service did not answer")
