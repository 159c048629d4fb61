"""
OpenRouter backend — streaming chat completions over SSE.
Web search is requested through OpenRouter's `web` plugin; sources come
back as url_citation annotations on the deltas.
"""

from __future__ import annotations

import logging
import os
from typing import AsyncIterator

import httpx

from orchestrate.backends.base import BaseBackend
from orchestrate.cancellation import CancellationToken
from orchestrate.errors import TransportError
from orchestrate.models import StreamEvent
from orchestrate.sse import iter_payloads

logger = logging.getLogger(__name__)

DEFAULT_URL = "https://openrouter.ai/api/v1"


class OpenRouterBackend(BaseBackend):
    """Backend for the OpenRouter API."""

    def __init__(
        self,
        name: str = "openrouter",
        url: str = DEFAULT_URL,
        api_key: str = "",
        timeout: int = 120,
        site_url: str = "http://localhost:3000",
        app_title: str = "Orchestrate Chat",
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(name=name, url=url, timeout=timeout)
        # Resolve env var references like ${OPENROUTER_API_KEY}
        self.api_key = self._resolve_env(api_key)
        self.site_url = site_url
        self.app_title = app_title
        self._transport = transport

    @classmethod
    def from_config(cls, cfg: dict, transport: httpx.AsyncBaseTransport | None = None) -> "OpenRouterBackend":
        backend_cfg = cfg.get("backend", {})
        return cls(
            url=backend_cfg.get("url", DEFAULT_URL),
            api_key=backend_cfg.get("api_key", ""),
            timeout=backend_cfg.get("timeout", 120),
            site_url=backend_cfg.get("site_url", "http://localhost:3000"),
            app_title=backend_cfg.get("app_title", "Orchestrate Chat"),
            transport=transport,
        )

    @staticmethod
    def _resolve_env(value: str) -> str:
        """Resolve ${ENV_VAR} references in config values."""
        if value and value.startswith("${") and value.endswith("}"):
            env_name = value[2:-1]
            return os.environ.get(env_name, "")
        return value

    def _headers(self) -> dict:
        """Build request headers with auth and app attribution."""
        headers = {
            "Content-Type": "application/json",
            "HTTP-Referer": self.site_url,
            "X-Title": self.app_title,
        }
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    @staticmethod
    def _build_body(history: list[dict], model: str, search_enabled: bool) -> dict:
        body = {"model": model, "messages": history, "stream": True}
        if search_enabled:
            body["plugins"] = [{"id": "web"}]
        return body

    def _client(self, timeout) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    async def stream_completion(
        self,
        history: list[dict],
        model: str,
        search_enabled: bool = False,
        token: CancellationToken | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Open a streaming completion and yield decoded events."""
        if not self.api_key:
            raise TransportError("No API key configured for OpenRouter")
        token = token or CancellationToken()

        async with self._client(self.timeout) as client:
            request = client.build_request(
                "POST",
                f"{self.url}/chat/completions",
                headers=self._headers(),
                json=self._build_body(history, model, search_enabled),
            )
            try:
                resp = await token.guard(client.send(request, stream=True))
            except httpx.TimeoutException as e:
                logger.warning("OpenRouter backend '%s' timed out opening stream", self.name)
                raise TransportError(f"Timeout after {self.timeout}s") from e
            except httpx.HTTPError as e:
                logger.warning("OpenRouter backend '%s' request failed: %s", self.name, e)
                raise TransportError(str(e)) from e

            try:
                if resp.status_code >= 400:
                    detail = (await resp.aread()).decode("utf-8", errors="replace")
                    logger.warning(
                        "OpenRouter backend '%s' returned HTTP %d", self.name, resp.status_code,
                    )
                    raise TransportError(
                        f"HTTP {resp.status_code}: {detail[:200]}", status_code=resp.status_code,
                    )
                async for payload in iter_payloads(resp.aiter_bytes(), token):
                    yield StreamEvent.from_chunk(payload)
            except httpx.HTTPError as e:
                logger.warning("OpenRouter backend '%s' stream failed: %s", self.name, e)
                raise TransportError(f"Stream interrupted: {e}") from e
            finally:
                await resp.aclose()

    async def list_models(self) -> list[dict]:
        """Fetch available models from OpenRouter."""
        if not self.api_key:
            return []
        try:
            async with self._client(10) as client:
                resp = await client.get(f"{self.url}/models", headers=self._headers())
                resp.raise_for_status()
                data = resp.json()
        except Exception as e:
            logger.warning("Failed to list OpenRouter models: %s", e)
            return []
        return [m for m in data.get("data", []) if m.get("id")]
