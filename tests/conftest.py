"""
Pytest configuration and shared fixtures.

This file is automatically loaded by pytest and provides:
- Test environment setup (the service loads config at import time)
- A fake upstream built on httpx.MockTransport with an observable body stream
- A baseline AppConfig for unit tests
"""

import asyncio
import os
import sys
from dataclasses import replace
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import httpx
import pytest

# Add parent directory to Python path so tests can import project modules
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# Must be set before relay_service is imported during collection.
os.environ.setdefault("OPENAI_API_KEY", "sk-test-key-0123456789")
os.environ.setdefault("DIFY_API_KEY", "app-test-key-0123456789")
os.environ.setdefault("OPENAI_API_TYPE", "openai")
os.environ.setdefault("LOG_LEVEL", "DEBUG")
os.environ.setdefault("LOG_PATH", "/tmp/chat_relay_test.log")

from config import AppConfig  # noqa: E402


class FakeBodyStream(httpx.AsyncByteStream):
    """
    Upstream response body that records how it is consumed.

    `delays` maps fragment index -> seconds to wait before yielding it;
    `hang` keeps the body open after the last fragment.
    """

    def __init__(
        self,
        fragments: Iterable[bytes],
        delays: Optional[Dict[int, float]] = None,
        hang: bool = False,
    ) -> None:
        self.fragments: List[bytes] = list(fragments)
        self.delays = delays or {}
        self.hang = hang
        self.reads = 0
        self.reads_after_close = 0
        self.closed = False

    async def __aiter__(self):
        for i, frag in enumerate(self.fragments):
            delay = self.delays.get(i)
            if delay:
                await asyncio.sleep(delay)
            if self.closed:
                self.reads_after_close += 1
            self.reads += 1
            yield frag
        if self.hang:
            await asyncio.sleep(3600)

    async def aclose(self) -> None:
        self.closed = True


class FakeUpstream:
    """Serves one canned response per request and records the requests it saw."""

    def __init__(self, status_code: int = 200, body=None, json_body=None, headers=None) -> None:
        self.status_code = status_code
        self.body = body
        self.json_body = json_body
        self.headers = headers or {}
        self.requests: List[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.json_body is not None:
            return httpx.Response(self.status_code, json=self.json_body, headers=self.headers)
        if isinstance(self.body, httpx.AsyncByteStream):
            headers = {"content-type": "text/event-stream", **self.headers}
            return httpx.Response(self.status_code, stream=self.body, headers=headers)
        return httpx.Response(self.status_code, content=self.body or b"", headers=self.headers)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


@pytest.fixture
def test_config():
    """Baseline configuration for the openai flavor."""
    return AppConfig(
        openai_api_host="https://api.openai.com",
        openai_api_type="openai",
        openai_api_version="2023-03-15-preview",
        azure_deployment_id="",
        openai_organization="",
        openai_api_key="sk-default-key",
        default_model="gpt-3.5-turbo",
        default_system_prompt="You are a helpful assistant.",
        default_temperature=1.0,
        max_tokens=1000,
        dify_api_url="https://api.dify.ai/v1/chat-messages",
        dify_api_key="app-default-key",
        dify_api_timeout_ms=5000,
        request_timeout_s=30.0,
        port=8000,
        log_level="INFO",
        log_path="/tmp/chat_relay_test.log",
        max_request_bytes=2_000_000,
        user_agent="chat-relay-test/1.0",
    )


@pytest.fixture
def azure_config(test_config):
    """Configuration for the azure flavor."""
    return replace(
        test_config,
        openai_api_host="https://example.openai.azure.com",
        openai_api_type="azure",
        azure_deployment_id="gpt35-deploy",
        openai_api_version="2023-05-15",
    )


@pytest.fixture
def fake_upstream():
    """Factory: fake_upstream(fragments, ...) -> (FakeUpstream, FakeBodyStream)."""

    def make(fragments=(), *, status_code=200, delays=None, hang=False):
        body = FakeBodyStream(fragments, delays=delays, hang=hang)
        return FakeUpstream(status_code=status_code, body=body), body

    return make


@pytest.fixture
def upstream_error():
    """Factory: upstream_error(status_code, json_body=..., body=...) -> FakeUpstream."""

    def make(status_code=500, *, json_body=None, body=b""):
        return FakeUpstream(status_code=status_code, body=body, json_body=json_body)

    return make
