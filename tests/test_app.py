import json

import httpx
from fastapi.testclient import TestClient

from pscale_agent.agent_service import AgentService
from pscale_agent.app import create_app
from pscale_agent.config import AgentConfig
from pscale_agent.stream_chunks import client_chunk


def _make_cfg(**overrides: object) -> AgentConfig:
    raw = {
        "openai_api_key": "sk-test",
        "planetscale_org": "acme",
        "planetscale_token_id": "token-id",
        "planetscale_token": "secret",
        "disconnect_poll_seconds": 0.01,
    }
    raw.update(overrides)
    return AgentConfig.model_validate(raw)


class _OneAnswerCompletion:
    def __init__(self) -> None:
        self.payloads: list[dict] = []

    async def stream_chat_completion(self, payload, *, trace_id=None):
        self.payloads.append(payload)
        yield client_chunk(completion_id="c", model="m", created=1, delta={"content": "Hello"})
        yield client_chunk(completion_id="c", model="m", created=1, delta={}, finish_reason="stop")


def _client(completion=None) -> tuple[TestClient, _OneAnswerCompletion]:
    completion = completion or _OneAnswerCompletion()
    service = AgentService(
        _make_cfg(),
        completion=completion,
        pscale_transport=httpx.MockTransport(lambda request: httpx.Response(200, json={})),
    )
    return TestClient(create_app(service=service)), completion


def test_oauth_callback_is_acknowledged() -> None:
    client, _ = _client()

    response = client.get("/oauth/callback", params={"code": "abc"})

    assert response.status_code == 200
    assert response.json() == {"ok": True}


def test_healthz_reports_ok() -> None:
    client, _ = _client()

    body = client.get("/healthz").json()

    assert body["ok"] is True
    assert body["service"] == "pscale-agent"


def test_invalid_json_body_is_rejected() -> None:
    client, completion = _client()

    response = client.post("/", content=b"{not json", headers={"content-type": "application/json"})

    assert response.status_code == 400
    assert response.json() == {"error": "Bad request"}
    assert completion.payloads == []


def test_body_without_messages_is_rejected() -> None:
    client, _ = _client()

    response = client.post("/", json={"conversation": []})

    assert response.status_code == 400
    assert response.json() == {"error": "Bad request"}


def test_message_with_non_string_content_is_rejected() -> None:
    client, _ = _client()

    response = client.post("/", json={"messages": [{"role": "user", "content": ["parts"]}]})

    assert response.status_code == 400


def test_chat_streams_sse_and_strips_unknown_fields() -> None:
    client, completion = _client()

    response = client.post(
        "/",
        json={
            "copilot_thread_id": "t-1",
            "messages": [
                {"role": "user", "content": "hi", "copilot_references": [], "name": "octocat"},
            ],
        },
    )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    frames = [block for block in response.text.split("\n\n") if block]
    assert len(frames) == 2
    first = json.loads(frames[0][len("data: "):])
    assert first["choices"][0]["delta"] == {"content": "Hello"}
    assert completion.payloads[0]["messages"] == [{"role": "user", "name": "octocat", "content": "hi"}]
