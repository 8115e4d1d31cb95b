"""Upstream provider communication: request building and the outbound call."""

from __future__ import annotations

import asyncio
import logging
import math
import time
from typing import Any, Dict

import httpx

from config import AppConfig
from errors import TransportError
from logger import LOGGER_NAME, mask_secret
from models import ChatRequest, ConversationRequest, RequestDescriptor

log = logging.getLogger(LOGGER_NAME)

PROVIDER_OPENAI = "openai"
PROVIDER_DIFY = "dify"

_ERROR_PREFIX = {
    PROVIDER_OPENAI: "OpenAI API returned an error",
    PROVIDER_DIFY: "API returned an error",
}


def resolve_credential(key: str | None, default: str) -> str:
    """Caller-supplied key wins; otherwise fall back to the configured default."""
    key = (key or "").strip()
    return key or default


class UpstreamClient:
    """Build and send requests to the chat-completion and conversation providers."""

    def __init__(self, config: AppConfig) -> None:
        self._config = config

    def chat_url(self) -> str:
        """Chat-completions endpoint for the configured API flavor."""
        cfg = self._config
        if cfg.openai_api_type == "azure":
            return (
                f"{cfg.openai_api_host}/openai/deployments/{cfg.azure_deployment_id}"
                f"/chat/completions?api-version={cfg.openai_api_version}"
            )
        return f"{cfg.openai_api_host}/v1/chat/completions"

    def chat_headers(self, key: str) -> Dict[str, str]:
        """Headers for the chat-completions call. `key` is the effective credential."""
        cfg = self._config
        headers = {
            "Content-Type": "application/json",
            "User-Agent": cfg.user_agent,
        }
        if cfg.openai_api_type == "azure":
            headers["api-key"] = key
        else:
            headers["Authorization"] = f"Bearer {key}"
            if cfg.openai_organization:
                headers["OpenAI-Organization"] = cfg.openai_organization
        return headers

    def build_chat_request(self, req: ChatRequest) -> RequestDescriptor:
        """
        Assemble the chat-completions request.

        The prompt is sent as a single leading system message followed by the
        caller's messages in order. Azure selects the model through the
        deployment in the URL, so `model` is left out of the body.
        """
        if not math.isfinite(req.temperature):
            raise ValueError("temperature must be a finite number")

        key = resolve_credential(req.key, self._config.openai_api_key)
        body: Dict[str, Any] = {}
        if self._config.openai_api_type == "openai":
            body["model"] = req.model.id
        body["messages"] = [{"role": "system", "content": req.prompt}] + [
            m.to_dict() for m in req.messages
        ]
        body["max_tokens"] = self._config.max_tokens
        body["temperature"] = req.temperature
        body["stream"] = True

        return RequestDescriptor(url=self.chat_url(), headers=self.chat_headers(key), body=body)

    def build_conversation_request(self, req: ConversationRequest) -> RequestDescriptor:
        """Assemble the conversation-API request. History lives upstream, keyed by conversation id."""
        key = resolve_credential(req.key, self._config.dify_api_key)
        return RequestDescriptor(
            url=self._config.dify_api_url,
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {key}",
                "User-Agent": self._config.user_agent,
            },
            body={
                "inputs": {},
                "query": req.query,
                "response_mode": "streaming",
                "user": req.user,
                "conversation_id": req.conversation_id,
            },
        )

    async def open_stream(
        self,
        client: httpx.AsyncClient,
        desc: RequestDescriptor,
        provider: str,
    ) -> httpx.Response:
        """
        Send the request with a streamed body and check the status.

        On a non-200 status the error body is read, the response is closed and a
        TransportError is raised. On success the still-open response is returned;
        the caller owns closing it.
        """
        if log.isEnabledFor(logging.DEBUG):
            auth = desc.headers.get("Authorization") or desc.headers.get("api-key") or ""
            log.debug(
                "Upstream request provider=%s url=%s auth=%s",
                provider,
                desc.url,
                mask_secret(auth.replace("Bearer ", "")),
            )

        t0 = time.time()
        req = client.build_request(desc.method, desc.url, headers=desc.headers, json=desc.body)
        resp = await client.send(req, stream=True)
        dt = (time.time() - t0) * 1000
        log.info("Upstream %s status=%s ms=%.1f", provider, resp.status_code, dt)

        if resp.status_code == 200:
            return resp

        try:
            body = await self.read_error_body(resp)
        finally:
            await resp.aclose()

        err = TransportError.from_body(
            resp.status_code,
            body,
            reason=resp.reason_phrase,
            prefix=_ERROR_PREFIX.get(provider, "API returned an error"),
        )
        log.warning(
            "Upstream %s error status=%s content-type=%s message=%r",
            provider,
            resp.status_code,
            resp.headers.get("content-type", ""),
            err.message[:500],
        )
        raise err

    @staticmethod
    async def read_error_body(
        resp: httpx.Response, limit: int = 64_000, timeout_s: float = 5.0
    ) -> bytes:
        """Best-effort: read the error body without risking a hang."""
        try:
            raw = await asyncio.wait_for(resp.aread(), timeout=timeout_s)
        except (asyncio.TimeoutError, httpx.HTTPError) as e:
            log.debug("Could not read upstream error body: %r", e)
            return b""
        return raw[:limit]
