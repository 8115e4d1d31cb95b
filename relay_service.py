"""
Chat relay service: streams chat completions from OpenAI / Azure OpenAI and
conversation answers from a Dify-style conversation API.

Endpoints:
  POST /api/chat   -> raw assistant text, streamed as it arrives
  POST /api/dify   -> newline-delimited {"conversation_id", "answer"} records
  GET  /api/models -> known chat models
  GET  /healthz
"""

from __future__ import annotations

import contextlib
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx
from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from config import load_config
from errors import TransportError
from logger import setup_logging
from models import OPENAI_MODELS, ChatBody, ConversationRequest
from relay import RelayStream, dify_stream, openai_stream
from upstream import UpstreamClient
from utils import dump_config, load_env_files

# Load environment
load_env_files()

# Load configuration
config = load_config()
config.validate()

# Initialize logging
log = setup_logging(config.log_path)
dump_config(config)

upstream_client = UpstreamClient(config)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Lifespan context manager for FastAPI application."""
    log.info("Chat relay starting api_type=%s", config.openai_api_type)
    yield
    log.info("Chat relay stopped")


app = FastAPI(
    title="chat-relay",
    version="0.3.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _new_client() -> httpx.AsyncClient:
    """Per-request client. Reads are unbounded so the relay decides when a stream is idle."""
    t = float(config.request_timeout_s)
    return httpx.AsyncClient(
        timeout=httpx.Timeout(connect=t, write=t, pool=t, read=None),
    )


def _request_id(request: Request) -> str:
    return (
        (request.headers.get("x-request-id") or "").strip()
        or (request.headers.get("x-correlation-id") or "").strip()
        or uuid.uuid4().hex
    )


async def _read_json_body(request: Request) -> Dict[str, Any]:
    """Decode the request body with size and shape guards."""
    cl = request.headers.get("content-length")
    if cl:
        try:
            n = int(cl)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid Content-Length header: {cl!r}")
        if n < 0:
            raise HTTPException(status_code=400, detail="Invalid Content-Length: must be non-negative")
        if n > config.max_request_bytes:
            raise HTTPException(
                status_code=413,
                detail=f"Request too large: {n} bytes (max {config.max_request_bytes})",
            )

    try:
        body = await request.json()
    except Exception:
        raise HTTPException(status_code=400, detail="Invalid JSON body")
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON body: expected object")
    return body


def _transport_error_response(err: TransportError) -> JSONResponse:
    return JSONResponse(status_code=500, content=err.to_dict())


async def _relay_body(stream: RelayStream) -> AsyncIterator[bytes]:
    """Forward relay bytes; closing here releases the upstream when the client goes away."""
    try:
        async for b in stream:
            yield b
    finally:
        await stream.aclose()


@app.get("/healthz")
async def healthz() -> Dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok"}


@app.get("/api/models")
async def api_models() -> List[Dict[str, Any]]:
    """List known chat models."""
    return [m.to_dict() for m in OPENAI_MODELS.values()]


@app.post("/api/chat")
async def api_chat(request: Request) -> Response:
    """Stream a chat completion as raw UTF-8 text."""
    body = await _read_json_body(request)
    try:
        chat = ChatBody.from_dict(
            body,
            default_model=config.default_model,
            default_prompt=config.default_system_prompt,
            default_temperature=config.default_temperature,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"Invalid request: {e}")

    if not (chat.key or config.openai_api_key):
        raise HTTPException(
            status_code=500, detail="OPENAI_API_KEY environment variable required"
        )

    req_id = _request_id(request)
    log.info(
        "Incoming chat req_id=%s model=%s messages=%d temperature=%s",
        req_id,
        chat.model.id,
        len(chat.messages),
        chat.temperature,
    )

    client = _new_client()
    try:
        stream = await openai_stream(
            client, upstream_client, chat.to_chat_request(), owns_client=True, req_id=req_id
        )
    except TransportError as e:
        await client.aclose()
        return _transport_error_response(e)
    except Exception:
        with contextlib.suppress(Exception):
            await client.aclose()
        raise

    return StreamingResponse(
        _relay_body(stream),
        media_type="text/plain; charset=utf-8",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


def _conversation_request(body: Dict[str, Any]) -> ConversationRequest:
    """Accept either `{query, ...}` or the chat payload shape (last user message is the query)."""
    query: Optional[str] = body.get("query")
    if query is None and isinstance(body.get("messages"), list):
        chat = ChatBody.from_dict(body, default_model=config.default_model)
        query = chat.last_user_query()
    if not isinstance(query, str) or not query:
        raise ValueError("'query' must be a non-empty string")

    conversation_id = body.get("conversation_id")
    if conversation_id is None:
        conversation_id = body.get("Dify_ConversationId")
    fields = {
        "key": body.get("key") or "",
        "user": body.get("user") or "",
        "conversation_id": conversation_id or "",
    }
    for name, value in fields.items():
        if not isinstance(value, str):
            raise ValueError(f"'{name}' must be a string")
    return ConversationRequest(query=query, **fields)


@app.post("/api/dify")
async def api_dify(request: Request) -> Response:
    """Stream conversation answers as newline-delimited JSON records."""
    body = await _read_json_body(request)
    try:
        conv = _conversation_request(body)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"Invalid request: {e}")

    if not (conv.key or config.dify_api_key):
        raise HTTPException(
            status_code=500, detail="DIFY_API_KEY environment variable required"
        )

    req_id = _request_id(request)
    log.info(
        "Incoming conversation req_id=%s user=%r conversation_id=%r",
        req_id,
        conv.user,
        conv.conversation_id or "<new>",
    )

    client = _new_client()
    try:
        stream = await dify_stream(
            client,
            upstream_client,
            conv,
            idle_timeout_s=config.dify_idle_timeout_s,
            owns_client=True,
            req_id=req_id,
        )
    except TransportError as e:
        await client.aclose()
        return _transport_error_response(e)
    except Exception:
        with contextlib.suppress(Exception):
            await client.aclose()
        raise

    return StreamingResponse(
        _relay_body(stream),
        media_type="application/x-ndjson",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=config.port, reload=False)
