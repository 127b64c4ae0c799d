"""Completion client -- Schnittstelle zum Natural-Language-Completion-Service.

Der Kern benutzt den Service an drei Stellen:
  - Graph-Synthese (GraphSynthesizer, GraphEvolver)
  - Strategie-Wahl im UncertaintyRouter
  - beliebige Domain-Nodes über den ExecutionContext

Alles was ``async complete(prompt) -> str`` anbietet, erfüllt das Protokoll.
"""

from __future__ import annotations

import json
import re
import time
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import httpx

from adaptgraph.core.errors import LLMError
from adaptgraph.utils.logging import get_logger

if TYPE_CHECKING:
    from adaptgraph.config import LLMConfig

log = get_logger(__name__)


@runtime_checkable
class CompletionClient(Protocol):
    """Minimaler Completion-Vertrag."""

    async def complete(self, prompt: str) -> str: ...


class OllamaCompletionClient:
    """Async HTTP client for the Ollama ``/api/generate`` endpoint."""

    def __init__(
        self,
        config: LLMConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = config.base_url.rstrip("/")
        self._model = config.model
        self._timeout = config.timeout_seconds
        self._temperature = config.temperature
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _ensure_client(self) -> httpx.AsyncClient:
        """Lazy-Initialisierung des HTTP-Clients."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=httpx.Timeout(
                    connect=10.0,
                    read=float(self._timeout),
                    write=30.0,
                    pool=10.0,
                ),
                transport=self._transport,
                trust_env=False,
            )
        return self._client

    async def close(self) -> None:
        """Schließt den HTTP-Client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def complete(self, prompt: str) -> str:
        """Sendet einen Prompt und gibt den getrimmten Antworttext zurück.

        Raises:
            LLMError: Bei Kommunikations- oder Server-Fehlern oder leerer Antwort.
        """
        client = await self._ensure_client()
        payload: dict[str, Any] = {
            "model": self._model,
            "prompt": prompt,
            "stream": False,
            "options": {"temperature": self._temperature},
        }

        start = time.monotonic()
        try:
            resp = await client.post("/api/generate", json=payload)
        except httpx.TimeoutException as exc:
            duration_ms = int((time.monotonic() - start) * 1000)
            log.error("llm_timeout", model=self._model, duration_ms=duration_ms)
            raise LLMError(
                f"Completion timeout after {duration_ms}ms",
                error_code="LLM_TIMEOUT",
            ) from exc
        except httpx.ConnectError as exc:
            raise LLMError(
                f"Completion service unreachable at {self._base_url}",
                error_code="LLM_UNREACHABLE",
            ) from exc
        except httpx.HTTPError as exc:
            log.error("llm_transport_error", model=self._model, error=str(exc))
            raise LLMError(
                f"Completion transport error: {exc}",
                error_code="LLM_TRANSPORT_ERROR",
            ) from exc

        if resp.status_code != 200:
            raise LLMError(
                f"Completion HTTP {resp.status_code}: {resp.text[:500]}",
                details={"status_code": resp.status_code},
            )

        try:
            data = resp.json()
        except ValueError as exc:
            raise LLMError(
                "Completion service returned a non-JSON body",
                error_code="LLM_INVALID_RESPONSE",
                details={"body": resp.text[:200]},
            ) from exc
        if not isinstance(data, dict):
            raise LLMError(
                "Completion service returned an unexpected JSON payload",
                error_code="LLM_INVALID_RESPONSE",
                details={"body": resp.text[:200]},
            )

        text = str(data.get("response", "")).strip()
        if not text:
            raise LLMError("Completion service returned no text", error_code="LLM_NO_RESPONSE")

        log.debug(
            "llm_complete",
            model=self._model,
            duration_ms=int((time.monotonic() - start) * 1000),
            chars=len(text),
        )
        return text


def extract_json(text: str) -> dict[str, Any] | None:
    """Extrahiert ein JSON-Objekt aus LLM-Text (mit oder ohne Markdown-Fences)."""
    cleaned = re.sub(r"```(?:json)?\s*", "", text.strip())
    cleaned = re.sub(r"```\s*$", "", cleaned.strip())

    try:
        data = json.loads(cleaned)
        if isinstance(data, dict):
            return data
    except json.JSONDecodeError:
        pass

    # Erster { ... } Block
    match = re.search(r"\{.*\}", text, re.DOTALL)
    if match:
        try:
            data = json.loads(match.group())
            if isinstance(data, dict):
                return data
        except json.JSONDecodeError:
            pass

    return None
