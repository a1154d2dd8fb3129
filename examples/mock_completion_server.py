"""Mock completion API that calls `listDatabases` once, then answers."""

from __future__ import annotations

import json
import time
import uuid
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import StreamingResponse

app = FastAPI(title="mock-completion")


def _chunk(model: str, delta: dict[str, Any], finish_reason: str | None = None) -> str:
    payload = {
        "id": "chatcmpl-mock",
        "object": "chat.completion.chunk",
        "created": int(time.time()),
        "model": model,
        "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
    }
    return f"data: {json.dumps(payload)}\n\n"


@app.post("/v1/chat/completions")
async def chat_completions(request: Request):
    payload = await request.json()
    messages: list[dict[str, Any]] = payload.get("messages") or []
    model = payload.get("model") or "mock-model"
    last_tool = next((m for m in reversed(messages) if m.get("role") == "tool"), None)

    async def gen():
        if last_tool is None:
            call = {
                "index": 0,
                "id": f"call_{uuid.uuid4().hex}",
                "type": "function",
                "function": {"name": "listDatabases", "arguments": "{}"},
            }
            yield _chunk(model, {"role": "assistant", "content": None, "tool_calls": [call]})
            yield _chunk(model, {}, "tool_calls")
        else:
            result = json.loads(last_tool.get("content") or "{}")
            count = len((result.get("data") or {}).get("data") or [])
            yield _chunk(model, {"role": "assistant", "content": ""})
            for word in f"You have {count} databases.".split(" "):
                yield _chunk(model, {"content": word + " "})
            yield _chunk(model, {}, "stop")
        yield "data: [DONE]\n\n"

    return StreamingResponse(gen(), media_type="text/event-stream")


@app.get("/v1/organizations/{org}/databases")
async def list_databases(org: str) -> dict[str, Any]:
    return {
        "data": [
            {"id": "db-1", "name": "orders", "region": {"slug": "us-east"}},
            {"id": "db-2", "name": "users", "region": {"slug": "eu-west"}},
        ]
    }
