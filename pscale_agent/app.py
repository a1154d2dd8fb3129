"""HTTP application for the PlanetScale chat agent.

Exposes one streaming chat endpoint that proxies the conversation to the
completion API with PlanetScale tools attached, plus an OAuth callback stub
and a health check.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from .agent_service import AgentService
from .chat_handlers import build_sse_response, stream_until_disconnect
from .config import AgentConfig, load_config
from .json_helpers import to_bounded_json
from .logging_utils import setup_logging

LOG = logging.getLogger(__name__)


class Message(BaseModel):
    """One conversation message; unknown client-specific fields are dropped."""

    role: str
    name: str | None = None
    content: str


class ChatRequest(BaseModel):
    messages: list[Message]


def _bad_request() -> JSONResponse:
    return JSONResponse({"error": "Bad request"}, status_code=400)


def create_app(cfg: AgentConfig | None = None, *, service: AgentService | None = None) -> FastAPI:
    """Create and configure the FastAPI application instance."""
    if cfg is None:
        cfg = service.cfg if service is not None else load_config()
    service = service or AgentService(cfg)

    app = FastAPI(title="pscale-agent", version="0.1.0")

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        LOG.info("request method=%s url=%s", request.method, request.url)
        return await call_next(request)

    @app.get("/healthz")
    async def healthz() -> JSONResponse:
        return JSONResponse(
            {
                "service": "pscale-agent",
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "ok": True,
            }
        )

    # Accepted and ignored for now.
    @app.api_route("/oauth/callback", methods=["GET", "POST"])
    async def oauth_callback() -> JSONResponse:
        return JSONResponse({"ok": True}, status_code=200)

    @app.post("/")
    async def chat(request: Request):
        """Stream the agent's answer for one conversation as SSE."""
        try:
            payload = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return _bad_request()
        try:
            chat_request = ChatRequest.model_validate(payload)
        except ValidationError as exc:
            LOG.info("rejected chat request errors=%s", exc.error_count())
            return _bad_request()

        if LOG.isEnabledFor(logging.DEBUG):
            LOG.debug("incoming chat request payload=%s", to_bounded_json(payload))

        messages = [msg.model_dump(exclude_none=True) for msg in chat_request.messages]
        stream = stream_until_disconnect(
            service.stream_chat(messages),
            request=request,
            poll_seconds=service.cfg.disconnect_poll_seconds,
        )
        return build_sse_response(stream)

    return app


def main() -> None:
    """CLI entry point that validates configuration and runs uvicorn."""

    def fail(message: str, exit_code: int = 2) -> None:
        print(f"ERROR: {message}", file=sys.stderr)
        raise SystemExit(exit_code)

    parser = argparse.ArgumentParser(description="PlanetScale chat agent")
    parser.add_argument("--config", default=None, help="Path to config YAML")
    args = parser.parse_args()

    import uvicorn

    try:
        cfg = load_config(args.config)
    except ValidationError as exc:
        missing = []
        for err in exc.errors():
            if err.get("type") == "missing":
                location = ".".join(str(x) for x in err.get("loc", []))
                missing.append(location)
        if missing:
            fail(
                "Configuration incomplete. Missing required fields: "
                + ", ".join(sorted(set(missing)))
                + ". Provide --config <file> or set env vars "
                + "(OPENAI_API_KEY, PLANETSCALE_ORG, PLANETSCALE_API_TOKEN_ID, PLANETSCALE_API_TOKEN)."
            )
        fail(f"Invalid configuration: {exc}")
    except Exception as exc:
        fail(f"Failed to load configuration: {exc}")

    setup_logging(cfg.logging)
    app = create_app(cfg)
    LOG.info("listening host=%s port=%s", cfg.host, cfg.port)
    try:
        uvicorn.run(app, host=cfg.host, port=cfg.port, log_config=None)
    except Exception as exc:
        fail(f"Server failed to start: {exc}", exit_code=1)


if __name__ == "__main__":
    main()
