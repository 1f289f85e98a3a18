"""Deepgram text intelligence client used by the external intent strategy."""

import json
from typing import Optional

import httpx

from config import config
from detection.errors import BackendTimeout, BackendUnavailable, MalformedResponse
from detection.intent import IntentLabel
from logger import log_debug

DEEPGRAM_READ_URL = "https://api.deepgram.com/v1/read"


def parse_top_intent(raw: str) -> Optional[IntentLabel]:
    """
    Pick the highest-confidence intent from a /v1/read response.

    Args:
        raw: Response body with results.intents.segments[].intents[]

    Returns:
        Top intent, or None when the response carries no intents

    Raises:
        MalformedResponse: If the body is not the expected structure
    """
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as e:
        raise MalformedResponse(f"Deepgram response is not valid JSON: {e}", raw=raw) from e

    try:
        segments = (payload.get("results") or {}).get("intents", {}).get("segments") or []
        best = None
        for segment in segments:
            for intent in segment.get("intents") or []:
                label = intent["intent"]
                confidence = float(intent.get("confidence_score", 0.0))
                if best is None or confidence > best.confidence:
                    best = IntentLabel(label=label, confidence=min(max(confidence, 0.0), 1.0))
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        raise MalformedResponse(f"Unexpected Deepgram response structure: {e}", raw=raw) from e
    return best


class DeepgramIntentClient:
    """Async client for Deepgram's text intent recognition endpoint."""

    def __init__(
        self,
        api_key: str,
        timeout_ms: int = None,
        custom_intents: list[str] = None,
        custom_intent_mode: str = "extended",
        client: httpx.AsyncClient = None,
    ):
        """
        Initialize Deepgram client.

        Args:
            api_key: Deepgram API key
            timeout_ms: Request timeout in milliseconds
            custom_intents: Extra intent labels to steer the classifier
            custom_intent_mode: "extended" or "strict"
            client: Pre-built HTTP client, mainly for tests

        Raises:
            ValueError: If API key is missing
        """
        if not api_key and client is None:
            raise ValueError("DEEPGRAM_API_KEY is required")

        self.timeout_ms = timeout_ms if timeout_ms is not None else config.deepgram_timeout_ms
        self.custom_intents = list(custom_intents or [])
        self.custom_intent_mode = custom_intent_mode
        self._client = client or httpx.AsyncClient(
            headers={"Authorization": f"Token {api_key}"},
            timeout=httpx.Timeout(self.timeout_ms / 1000),
        )

    def _params(self) -> list[tuple[str, str]]:
        params = [("intents", "true"), ("language", "en")]
        if self.custom_intents:
            params.extend(("custom_intent", intent) for intent in self.custom_intents)
            params.append(("custom_intent_mode", self.custom_intent_mode))
        return params

    async def classify(self, text: str) -> Optional[IntentLabel]:
        """Return the top intent for text, or None if Deepgram found none."""
        if not text or not text.strip():
            return None

        try:
            resp = await self._client.post(DEEPGRAM_READ_URL, params=self._params(), json={"text": text})
        except httpx.TimeoutException as e:
            raise BackendTimeout(f"Deepgram did not answer within {self.timeout_ms}ms") from e
        except httpx.HTTPError as e:
            raise BackendUnavailable(f"Deepgram request failed: {e}") from e

        if resp.status_code >= 400:
            raise BackendUnavailable(f"Deepgram API error {resp.status_code}: {resp.text[:200]}")

        intent = parse_top_intent(resp.text)
        log_debug("Deepgram intent", intent_label=intent.label if intent else None,
                  confidence=intent.confidence if intent else None)
        return intent

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "DeepgramIntentClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()
