import asyncio
import copy
import json

import httpx

from pscale_agent.agent_service import AgentService
from pscale_agent.chat_handlers import run_stream
from pscale_agent.config import AgentConfig
from pscale_agent.orchestrator import RunState
from pscale_agent.stream_chunks import client_chunk


def _make_cfg(**overrides: object) -> AgentConfig:
    raw = {
        "openai_api_key": "sk-test",
        "planetscale_org": "acme",
        "planetscale_token_id": "token-id",
        "planetscale_token": "secret",
    }
    raw.update(overrides)
    return AgentConfig.model_validate(raw)


_DATABASES = {
    "data": [
        {"id": "db-1", "name": "orders"},
        {"id": "db-2", "name": "users"},
    ]
}


def _chunk(delta: dict, finish_reason: str | None = None) -> dict:
    return client_chunk(
        completion_id="chatcmpl-up",
        model="gpt-4-1106-preview",
        created=1,
        delta=delta,
        finish_reason=finish_reason,
    )


def _tool_call_round(*calls: tuple[str, str, str]) -> list[dict]:
    deltas = [
        {"index": i, "id": call_id, "type": "function", "function": {"name": name, "arguments": arguments}}
        for i, (call_id, name, arguments) in enumerate(calls)
    ]
    return [
        _chunk({"role": "assistant", "content": None, "tool_calls": deltas}),
        _chunk({}, "tool_calls"),
    ]


def _answer_round(*parts: str) -> list[dict]:
    return [
        _chunk({"role": "assistant", "content": ""}),
        *(_chunk({"content": part}) for part in parts),
        _chunk({}, "stop"),
    ]


class _ScriptedCompletion:
    """Replays one scripted round per completion request."""

    def __init__(self, rounds: list) -> None:
        self.rounds = list(rounds)
        self.payloads: list[dict] = []

    async def stream_chat_completion(self, payload, *, trace_id=None):
        self.payloads.append(copy.deepcopy(payload))
        script = self.rounds.pop(0)
        if isinstance(script, Exception):
            raise script
        for item in script:
            if callable(item):
                await item()
            else:
                yield item


def _frames(raw: bytes) -> list[tuple]:
    out = []
    for block in raw.decode("utf-8").split("\n\n"):
        if not block:
            continue
        lines = block.split("\n")
        event = None
        if lines[0].startswith("event: "):
            event = lines[0][len("event: "):]
            lines = lines[1:]
        assert len(lines) == 1 and lines[0].startswith("data: ")
        out.append((event, json.loads(lines[0][len("data: "):])))
    return out


def _content(frame: tuple) -> str | None:
    return frame[1]["choices"][0]["delta"].get("content")


def _stream(completion, handler, messages, **cfg_overrides) -> list[tuple]:
    service = AgentService(
        _make_cfg(**cfg_overrides),
        completion=completion,
        pscale_transport=httpx.MockTransport(handler),
    )

    async def _main() -> bytes:
        return b"".join([frame async for frame in service.stream_chat(messages)])

    return _frames(asyncio.run(_main()))


def _databases_handler(requests: list):
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json=_DATABASES)

    return handler


def test_list_databases_round_trip_produces_expected_frame_sequence() -> None:
    requests: list[httpx.Request] = []
    answer = _answer_round("You have 2 ", "databases.")
    completion = _ScriptedCompletion([_tool_call_round(("call_1", "listDatabases", "")), answer])
    messages = [{"role": "user", "content": "list my databases"}]

    frames = _stream(completion, _databases_handler(requests), messages)

    assert frames[0][0] is None
    assert frames[0][1]["id"] == "chunk"
    assert _content(frames[0]) == "`GET /databases..."
    assert frames[1][0] == "copilot_references"
    assert [ref["id"] for ref in frames[1][1]] == ["db-1", "db-2"]
    assert all(ref["type"] == "planetscale.database" for ref in frames[1][1])
    assert _content(frames[2]) == "OK`  \n\n"
    assert [frame[1] for frame in frames[3:]] == answer
    assert "".join(_content(frame) or "" for frame in frames[3:]) == "You have 2 databases."
    assert len(requests) == 1
    assert messages == [{"role": "user", "content": "list my databases"}]


def test_tool_result_message_is_the_serialized_call_result() -> None:
    completion = _ScriptedCompletion([_tool_call_round(("call_1", "listDatabases", "{}")), _answer_round("done")])

    _stream(completion, _databases_handler([]), [{"role": "user", "content": "list my databases"}])

    first, second = completion.payloads
    assert first["stream"] is True
    assert first["model"] == "gpt-4-1106-preview"
    assert [tool["function"]["name"] for tool in first["tools"]][0] == "listDatabases"
    assert len(first["tools"]) == 7

    user, assistant, tool = second["messages"]
    assert user == {"role": "user", "content": "list my databases"}
    assert assistant["role"] == "assistant"
    assert assistant["tool_calls"][0]["id"] == "call_1"
    assert tool["role"] == "tool"
    assert tool["tool_call_id"] == "call_1"
    assert tool["content"] == json.dumps({"ok": True, "data": _DATABASES}, ensure_ascii=False, separators=(",", ":"))


def test_plain_answer_forwards_model_chunks_in_order() -> None:
    answer = _answer_round("Hello", ", ", "world")
    completion = _ScriptedCompletion([answer])

    frames = _stream(completion, _databases_handler([]), [{"role": "user", "content": "hi"}])

    assert all(event is None for event, _ in frames)
    assert [payload for _, payload in frames] == answer
    assert all(payload["choices"][0]["finish_reason"] != "tool_calls" for _, payload in frames)


def test_tool_call_chunks_never_reach_the_caller() -> None:
    completion = _ScriptedCompletion(
        [
            _tool_call_round(("call_1", "listDatabases", "{}")) + [_chunk({}, "tool_calls")],
            _answer_round("ok"),
        ]
    )

    frames = _stream(completion, _databases_handler([]), [{"role": "user", "content": "hi"}])

    for event, payload in frames:
        if event is None:
            choice = payload["choices"][0]
            assert choice["finish_reason"] != "tool_calls"
            assert "tool_calls" not in choice["delta"]


def test_upstream_http_failure_is_fed_back_and_run_continues() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"code": "not_found"})

    completion = _ScriptedCompletion(
        [_tool_call_round(("call_1", "getDatabase", '{"name": "ghost"}')), _answer_round("No such database.")]
    )

    frames = _stream(completion, handler, [{"role": "user", "content": "show ghost"}])

    assert _content(frames[0]) == "`GET /databases/ghost..."
    assert _content(frames[1]) == "Error 404`  \n"
    assert "".join(_content(frame) or "" for frame in frames[2:]) == "No such database."
    tool = completion.payloads[1]["messages"][-1]
    assert json.loads(tool["content"]) == {
        "ok": False,
        "status": 404,
        "statusText": "Not Found",
        "body": {"code": "not_found"},
    }


def test_malformed_tool_arguments_do_not_crash_the_run() -> None:
    requests: list[httpx.Request] = []
    completion = _ScriptedCompletion(
        [_tool_call_round(("call_1", "getDatabase", '{"name": ')), _answer_round("Sorry.")]
    )

    frames = _stream(completion, _databases_handler(requests), [{"role": "user", "content": "show"}])

    assert requests == []
    assert _content(frames[0]) == "Invalid arguments for `getDatabase`  \n\n"
    assert _content(frames[-2]) == "Sorry."
    tool = json.loads(completion.payloads[1]["messages"][-1]["content"])
    assert tool["ok"] is False
    assert tool["error"] == "invalid_arguments"


def test_multiple_tool_calls_run_sequentially_in_requested_order() -> None:
    paths: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        paths.append(request.url.path)
        return httpx.Response(200, json={"data": []})

    completion = _ScriptedCompletion(
        [
            _tool_call_round(
                ("call_a", "listBranches", '{"name": "orders"}'),
                ("call_b", "getBranch", '{"name": "orders", "branch": "main"}'),
            ),
            _answer_round("Two calls."),
        ]
    )

    frames = _stream(completion, handler, [{"role": "user", "content": "branches"}])

    assert paths == [
        "/v1/organizations/acme/databases/orders/branches",
        "/v1/organizations/acme/databases/orders/branches/main",
    ]
    narration = [_content(frame) for frame in frames[:4]]
    assert narration == [
        "`GET /databases/orders/branches...",
        "OK`  \n\n",
        "`GET /databases/orders/branches/main...",
        "OK`  \n\n",
    ]
    tool_ids = [msg["tool_call_id"] for msg in completion.payloads[1]["messages"] if msg["role"] == "tool"]
    assert tool_ids == ["call_a", "call_b"]


def test_completion_transport_failure_ends_with_error_frame() -> None:
    error = httpx.ConnectError("down", request=httpx.Request("POST", "https://api.openai.com/v1/chat/completions"))
    completion = _ScriptedCompletion([error])

    frames = _stream(completion, _databases_handler([]), [{"role": "user", "content": "hi"}])

    assert frames == [
        (
            "copilot_errors",
            [
                {
                    "type": "agent",
                    "code": "upstream_unavailable",
                    "message": "Connection to upstream service failed",
                    "identifier": "upstream_unavailable",
                }
            ],
        )
    ]


def test_planetscale_transport_failure_ends_with_error_frame() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    completion = _ScriptedCompletion([_tool_call_round(("call_1", "listDatabases", "{}")), _answer_round("unused")])

    frames = _stream(completion, handler, [{"role": "user", "content": "hi"}])

    assert _content(frames[0]) == "`GET /databases..."
    assert frames[-1][0] == "copilot_errors"
    assert frames[-1][1][0]["code"] == "upstream_timeout"
    assert len(completion.payloads) == 1


def test_single_tool_round_limit_still_lets_the_model_answer() -> None:
    requests: list[httpx.Request] = []
    completion = _ScriptedCompletion(
        [_tool_call_round(("call_1", "listDatabases", "{}")), _answer_round("You have 2 databases.")]
    )

    frames = _stream(completion, _databases_handler(requests), [{"role": "user", "content": "hi"}], max_tool_loops=1)

    assert len(completion.payloads) == 2
    assert len(requests) == 1
    assert all(event != "copilot_errors" for event, _ in frames)
    assert "".join(_content(frame) or "" for frame in frames[3:]) == "You have 2 databases."


def test_tool_loop_limit_ends_with_error_frame_without_running_extra_tools() -> None:
    requests: list[httpx.Request] = []
    completion = _ScriptedCompletion(
        [
            _tool_call_round(("call_1", "listDatabases", "{}")),
            _tool_call_round(("call_2", "listBranches", '{"name": "orders"}')),
        ]
    )

    frames = _stream(completion, _databases_handler(requests), [{"role": "user", "content": "hi"}], max_tool_loops=1)

    assert len(completion.payloads) == 2
    assert [request.url.path for request in requests] == ["/v1/organizations/acme/databases"]
    assert not any(event is None and "branches" in (_content((event, frame)) or "") for event, frame in frames)
    assert frames[-1][0] == "copilot_errors"
    assert frames[-1][1][0]["code"] == "tool_loop_limit"


def test_tool_calls_finish_without_payload_is_a_protocol_error() -> None:
    completion = _ScriptedCompletion([[_chunk({}, "tool_calls")]])

    frames = _stream(completion, _databases_handler([]), [{"role": "user", "content": "hi"}])

    assert frames == [
        (
            "copilot_errors",
            [
                {
                    "type": "agent",
                    "code": "completion_protocol_error",
                    "message": "Model requested tool calls but sent no tool call payloads",
                    "identifier": "completion_protocol_error",
                }
            ],
        )
    ]


def _blocked_forever():
    async def block() -> None:
        await asyncio.sleep(3600)

    return block


def test_closing_stream_during_model_turn_aborts_run() -> None:
    completion = _ScriptedCompletion([[_chunk({"role": "assistant", "content": "Thinking"}), _blocked_forever()]])
    service = AgentService(_make_cfg(), completion=completion, pscale_transport=httpx.MockTransport(lambda r: None))

    async def _main():
        run = service.create_run([{"role": "user", "content": "hi"}])
        stream = run_stream(run, on_finish=run.pscale.close)
        first = await stream.__anext__()
        await stream.aclose()
        leftover = [frame async for frame in stream]
        return run, first, leftover

    run, first, leftover = asyncio.run(_main())

    assert _content(_frames(first)[0]) == "Thinking"
    assert leftover == []
    assert run.state is RunState.ABORTED
    assert run.token.cancelled is True
    assert len(completion.payloads) == 1


def test_closing_stream_during_tool_call_stops_further_upstream_calls() -> None:
    requests: list[httpx.Request] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        await asyncio.sleep(3600)
        return httpx.Response(200, json={})

    completion = _ScriptedCompletion(
        [
            _tool_call_round(
                ("call_a", "listDatabases", "{}"),
                ("call_b", "listBranches", '{"name": "orders"}'),
            ),
            _answer_round("unused"),
        ]
    )
    service = AgentService(_make_cfg(), completion=completion, pscale_transport=httpx.MockTransport(handler))

    async def _main():
        run = service.create_run([{"role": "user", "content": "hi"}])
        stream = run_stream(run, on_finish=run.pscale.close)
        first = await stream.__anext__()
        # Let the first request reach the transport before aborting.
        while not requests:
            await asyncio.sleep(0)
        await stream.aclose()
        return run, first

    run, first = asyncio.run(_main())

    assert _content(_frames(first)[0]) == "`GET /databases..."
    assert run.state is RunState.ABORTED
    assert len(requests) == 1
    assert len(completion.payloads) == 1
