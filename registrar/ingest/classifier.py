from __future__ import annotations

import asyncio
import base64
import json
from abc import ABC, abstractmethod
from typing import Any, Iterable, Optional

import httpx

from registrar.core.config import Settings
from registrar.core.logging import get_logger

from .errors import ClassificationError
from .models import MAX_SLOT, MIN_SLOT, UNKNOWN_AGENT, ClassificationResult

DEFAULT_SLOT = 3
DEFAULT_CONFIDENCE = 0.5
_SHAPE_KEYS = {"agent", "slot", "role", "suggestedName", "suggested_name"}

REGISTRAR_PROMPT = """
You are the Digital Registrar. Analyze the incoming visual asset for character archival.

Known agents: {agents}.

Provide:
1. AGENT: one of the known agents, or "unknown".
2. ROLE: e.g. portrait, expression, hands, tools, wardrobe, environment, props, style.
3. SLOT: 1-14 based on the role (1=primary face, 2=side profile, 3=contextual, 7=hands,
   8-9=wardrobe, 10-11=environment, 12=props, 14=style).
4. SUGGESTED_NAME: a canonical name like LD_BIBLE_[AGENT]_[SLOT]_[ROLE].
5. TAGS: 5-10 descriptive technical tags.

Respond with JSON only:
{{"agent": "string", "slot": 0, "suggestedName": "string", "role": "string",
  "tags": ["string"], "confidence": 0.0, "reasoning": "string"}}
""".strip()


def extract_first_json_object(text: str) -> Optional[dict[str, Any]]:
    """Return the first ``{...}`` block in ``text`` that decodes to a JSON object.

    Prose, markdown fences and trailing commentary around the object are ignored;
    a brace that does not start a valid object is skipped and the scan continues.
    """
    decoder = json.JSONDecoder()
    index = text.find("{")
    while index != -1:
        try:
            value, _ = decoder.raw_decode(text, index)
        except json.JSONDecodeError:
            index = text.find("{", index + 1)
            continue
        if isinstance(value, dict):
            return value
        index = text.find("{", index + 1)
    return None


def _coerce_slot(raw: Any) -> int:
    try:
        slot = int(raw)
    except (TypeError, ValueError):
        return DEFAULT_SLOT
    return slot if MIN_SLOT <= slot <= MAX_SLOT else DEFAULT_SLOT


def _coerce_confidence(raw: Any) -> float:
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return DEFAULT_CONFIDENCE
    if value > 1.0 and value <= 100.0:
        # Some responses use percentages.
        value = value / 100.0
    return min(max(value, 0.0), 1.0)


def _coerce_tags(raw: Any) -> list[str]:
    if isinstance(raw, str):
        raw = raw.split(",")
    if not isinstance(raw, list):
        return []
    return [str(tag).strip() for tag in raw if str(tag).strip()]


def parse_classification(text: str, known_agents: Iterable[str]) -> ClassificationResult:
    """Build a :class:`ClassificationResult` from free text returned by the vision model.

    Raises:
        ClassificationError: no JSON object could be located in ``text``.
    """
    payload = extract_first_json_object(text)
    if payload is None:
        raise ClassificationError("Invalid analysis response format", provider_message=text[:200])
    if not _SHAPE_KEYS.intersection(payload):
        raise ClassificationError("Analysis response missing classification fields", provider_message=text[:200])

    agents = {agent.lower() for agent in known_agents}
    agent = str(payload.get("agent") or UNKNOWN_AGENT).strip().lower()
    if agent not in agents:
        agent = UNKNOWN_AGENT

    suggested = payload.get("suggestedName") or payload.get("suggested_name") or ""
    return ClassificationResult(
        agent=agent,
        slot=_coerce_slot(payload.get("slot")),
        role=str(payload.get("role") or "unknown").strip() or "unknown",
        suggested_name=str(suggested).strip(),
        tags=_coerce_tags(payload.get("tags")),
        confidence=_coerce_confidence(payload.get("confidence", DEFAULT_CONFIDENCE)),
        reasoning=str(payload.get("reasoning") or "No reasoning provided"),
    )


class VisionClassifier(ABC):
    @abstractmethod
    async def classify(self, image_bytes: bytes, mime_hint: str | None = None) -> ClassificationResult: ...

    async def aclose(self) -> None:
        return None


class GeminiVisionClassifier(VisionClassifier):
    """Calls a ``generateContent`` style vision endpoint with the image inlined as base64."""

    def __init__(
        self,
        *,
        api_key: str,
        api_base: str,
        model: str,
        known_agents: tuple[str, ...],
        timeout: float,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.model = model
        self.known_agents = known_agents
        self.prompt = REGISTRAR_PROMPT.format(agents=", ".join(known_agents))
        self.logger = get_logger(component="vision_classifier", model=model)
        self._client = httpx.AsyncClient(base_url=api_base.rstrip("/"), timeout=timeout, transport=transport)

    def _request_body(self, image_bytes: bytes, mime_hint: str | None) -> dict[str, Any]:
        return {
            "contents": [
                {
                    "parts": [
                        {"text": self.prompt},
                        {
                            "inlineData": {
                                "mimeType": mime_hint or "image/jpeg",
                                "data": base64.b64encode(image_bytes).decode("ascii"),
                            }
                        },
                    ]
                }
            ],
            "generationConfig": {"temperature": 0.2, "maxOutputTokens": 1024},
        }

    async def classify(self, image_bytes: bytes, mime_hint: str | None = None) -> ClassificationResult:
        try:
            response = await self._client.post(
                f"/models/{self.model}:generateContent",
                params={"key": self.api_key},
                json=self._request_body(image_bytes, mime_hint),
            )
        except httpx.TimeoutException as exc:
            raise ClassificationError("Vision analysis timed out", timed_out=True, provider_message=str(exc)) from exc
        except httpx.HTTPError as exc:
            raise ClassificationError("Vision service unreachable", provider_message=str(exc)) from exc

        if response.status_code >= 300:
            self.logger.warning("vision_api_error", status_code=response.status_code, body=response.text[:500])
            raise ClassificationError(
                f"Vision analysis failed: {response.status_code}",
                status_code=response.status_code,
                provider_message=response.text[:500],
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise ClassificationError("Vision service returned non-JSON payload", provider_message=response.text[:200]) from exc

        text = _first_candidate_text(data)
        if not text:
            raise ClassificationError("No analysis returned from vision service")
        return parse_classification(text, self.known_agents)

    async def aclose(self) -> None:
        await self._client.aclose()


def _first_candidate_text(data: Any) -> Optional[str]:
    try:
        return data["candidates"][0]["content"]["parts"][0]["text"]
    except (KeyError, IndexError, TypeError):
        return None


class StaticClassifier(VisionClassifier):
    """Offline classifier returning one fixed answer; used when no vision credentials exist."""

    def __init__(self, result: ClassificationResult | None = None, *, delay_s: float = 0.0):
        self.result = result or ClassificationResult(
            agent=UNKNOWN_AGENT,
            slot=DEFAULT_SLOT,
            role="contextual",
            tags=["unclassified"],
            confidence=0.0,
            reasoning="Static classifier: no vision backend configured",
        )
        self.delay_s = delay_s

    async def classify(self, image_bytes: bytes, mime_hint: str | None = None) -> ClassificationResult:
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        return self.result


def get_classifier(settings: Settings, *, transport: httpx.AsyncBaseTransport | None = None) -> VisionClassifier:
    if settings.classifier_backend == "static":
        return StaticClassifier()
    if settings.classifier_backend == "gemini":
        if not settings.classifier_configured:
            raise ValueError("gemini classifier requires a vision API key")
        return GeminiVisionClassifier(
            api_key=settings.secrets.vision_api_key or "",
            api_base=settings.vision_api_base,
            model=settings.vision_model,
            known_agents=settings.known_agents,
            timeout=settings.classify_timeout_s,
            transport=transport,
        )
    raise ValueError(f"Unsupported classifier backend: {settings.classifier_backend}")


__all__ = [
    "VisionClassifier",
    "GeminiVisionClassifier",
    "StaticClassifier",
    "extract_first_json_object",
    "parse_classification",
    "get_classifier",
]
