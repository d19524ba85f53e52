from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any
from urllib import error, request

logger = logging.getLogger(__name__)

OPENAI_RESPONSES_URL = "https://api.openai.com/v1/responses"
GEMINI_MODELS_URL = "https://generativelanguage.googleapis.com/v1beta/models"
DEFAULT_TIMEOUT_SECONDS = 60.0


@dataclass(frozen=True)
class LlmJsonResult:
    status: str
    raw_response: str | None
    warnings: list[str]


def _collect_gemini_text(response_payload: dict[str, Any]) -> str | None:
    candidates = response_payload.get("candidates") or []
    if not candidates:
        return None

    parts = (candidates[0].get("content") or {}).get("parts") or []
    extracted: list[str] = []
    for part in parts:
        text = part.get("text") if isinstance(part, dict) else None
        if isinstance(text, str) and text.strip():
            extracted.append(text.strip())

    if extracted:
        return "\n".join(extracted)
    return None


def _post_json(url: str, payload: dict[str, Any], headers: dict[str, str], timeout: float = DEFAULT_TIMEOUT_SECONDS) -> dict[str, Any]:
    body = json.dumps(payload).encode("utf-8")
    req = request.Request(url, data=body, headers=headers, method="POST")
    with request.urlopen(req, timeout=timeout) as response:
        response_body = response.read().decode("utf-8")
    return json.loads(response_body)


def _http_error_warning(provider_name: str, exc: error.HTTPError) -> str:
    response_excerpt = ""
    try:
        response_body = exc.read().decode("utf-8", errors="replace").strip()
    except Exception:
        response_body = ""

    if response_body:
        try:
            parsed = json.loads(response_body)
            if isinstance(parsed, dict):
                error_payload = parsed.get("error")
                if isinstance(error_payload, dict):
                    message = error_payload.get("message")
                    if isinstance(message, str) and message.strip():
                        response_excerpt = message.strip()
        except json.JSONDecodeError:
            response_excerpt = response_body[:200]

    if response_excerpt:
        return f"{provider_name} request failed with HTTP {exc.code}: {response_excerpt}"

    return f"{provider_name} request failed with HTTP {exc.code}."


def _collect_openai_text(content: Any) -> list[str]:
    if not isinstance(content, list):
        return []

    collected: list[str] = []
    for part in content:
        if not isinstance(part, dict):
            continue

        direct_text = part.get("text")
        if isinstance(direct_text, str) and direct_text.strip():
            collected.append(direct_text.strip())
            continue

        value = part.get("value")
        if isinstance(value, str) and value.strip():
            collected.append(value.strip())

    return collected


def _extract_openai_text(response_payload: dict[str, Any]) -> str | None:
    output_text = response_payload.get("output_text")
    if isinstance(output_text, str) and output_text.strip():
        return output_text.strip()

    output = response_payload.get("output")
    if isinstance(output, list):
        extracted: list[str] = []
        for item in output:
            if not isinstance(item, dict):
                continue
            extracted.extend(_collect_openai_text(item.get("content")))

        if extracted:
            return "\n".join(extracted)

    return None


def generate_json_with_openai(
    api_key: str,
    model: str,
    prompt: str,
    instructions: str | None = None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    max_output_tokens: int = 1500,
) -> LlmJsonResult:
    payload: dict[str, Any] = {
        "model": model,
        "input": prompt,
        "max_output_tokens": max_output_tokens,
        "text": {"format": {"type": "json_object"}},
    }
    if instructions:
        payload["instructions"] = instructions

    try:
        response_payload = _post_json(
            OPENAI_RESPONSES_URL,
            payload,
            {
                "Content-Type": "application/json",
                "Authorization": f"Bearer {api_key}",
            },
            timeout=timeout,
        )
    except error.HTTPError as exc:
        return LlmJsonResult(
            status="error",
            raw_response=None,
            warnings=[_http_error_warning("OpenAI", exc)],
        )
    except TimeoutError:
        return LlmJsonResult(
            status="error",
            raw_response=None,
            warnings=[f"OpenAI request timed out after {timeout:g} seconds."],
        )
    except Exception:
        logger.warning("OpenAI request failed", exc_info=True)
        return LlmJsonResult(
            status="error",
            raw_response=None,
            warnings=["OpenAI request failed before receiving a response."],
        )

    extracted_text = _extract_openai_text(response_payload)
    if extracted_text:
        return LlmJsonResult(status="success", raw_response=extracted_text, warnings=[])

    return LlmJsonResult(
        status="error",
        raw_response=json.dumps(response_payload),
        warnings=["OpenAI response did not contain extractable text content."],
    )


def generate_json_with_gemini(
    api_key: str,
    model: str,
    prompt: str,
    instructions: str | None = None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    max_output_tokens: int = 1500,
) -> LlmJsonResult:
    endpoint = f"{GEMINI_MODELS_URL}/{model}:generateContent?key={api_key}"
    payload: dict[str, Any] = {
        "contents": [{"parts": [{"text": prompt}]}],
        "generationConfig": {
            "responseMimeType": "application/json",
            "maxOutputTokens": max_output_tokens,
        },
    }
    if instructions:
        payload["systemInstruction"] = {"parts": [{"text": instructions}]}

    try:
        response_payload = _post_json(
            endpoint,
            payload,
            {"Content-Type": "application/json"},
            timeout=timeout,
        )
    except error.HTTPError as exc:
        return LlmJsonResult(
            status="error",
            raw_response=None,
            warnings=[_http_error_warning("Gemini", exc)],
        )
    except TimeoutError:
        return LlmJsonResult(
            status="error",
            raw_response=None,
            warnings=[f"Gemini request timed out after {timeout:g} seconds."],
        )
    except Exception:
        logger.warning("Gemini request failed", exc_info=True)
        return LlmJsonResult(
            status="error",
            raw_response=None,
            warnings=["Gemini request failed before receiving a response."],
        )

    extracted_text = _collect_gemini_text(response_payload)
    if extracted_text:
        return LlmJsonResult(status="success", raw_response=extracted_text, warnings=[])

    return LlmJsonResult(
        status="error",
        raw_response=json.dumps(response_payload),
        warnings=["Gemini response did not contain JSON text content."],
    )
