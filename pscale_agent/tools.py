"""Static PlanetScale tool declarations and dispatch.

Each tool validates its arguments with a pydantic model and delegates to
exactly one `PscaleClient` operation. The JSON schema sent to the model is
derived from the same model.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .json_helpers import to_bounded_json
from .pscale_client import CallResult, PscaleClient

LOG = logging.getLogger(__name__)


class NoArguments(BaseModel):
    model_config = ConfigDict(extra="ignore")


class DatabaseArguments(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str = Field(description="The name of the database.")


class BranchArguments(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str = Field(description="The name of the database the branch belongs to.")
    branch: str = Field(description="The name of the branch.")


class DeployRequestArguments(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str = Field(description="The name of the database to get a deploy request for.")
    requestID: int = Field(description="The ID of the deploy request to get.")


Handler = Callable[[PscaleClient, Any], Awaitable[CallResult]]


@dataclass(frozen=True)
class ToolDeclaration:
    """One model-callable function."""

    name: str
    description: str
    arguments_model: type[BaseModel]
    handler: Handler

    @property
    def parameters(self) -> dict[str, Any]:
        schema = self.arguments_model.model_json_schema()
        properties = {
            key: {k: v for k, v in prop.items() if k != "title"}
            for key, prop in (schema.get("properties") or {}).items()
        }
        return {
            "type": "object",
            "properties": properties,
            "required": list(schema.get("required") or []),
        }

    def openai_tool(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


TOOLS: tuple[ToolDeclaration, ...] = (
    ToolDeclaration(
        name="listDatabases",
        description="List all PlanetScale databases.",
        arguments_model=NoArguments,
        handler=lambda ps, args: ps.list_databases(),
    ),
    ToolDeclaration(
        name="getDatabase",
        description="Get information about a single PlanetScale database.",
        arguments_model=DatabaseArguments,
        handler=lambda ps, args: ps.get_database(args.name),
    ),
    ToolDeclaration(
        name="listBranches",
        description="List all database branches for the given database.",
        arguments_model=DatabaseArguments,
        handler=lambda ps, args: ps.list_branches(args.name),
    ),
    ToolDeclaration(
        name="getBranch",
        description="Get a specific branch of a database.",
        arguments_model=BranchArguments,
        handler=lambda ps, args: ps.get_branch(args.name, args.branch),
    ),
    ToolDeclaration(
        name="getBranchSchema",
        description="Get the schema of a specific branch of a database.",
        arguments_model=BranchArguments,
        handler=lambda ps, args: ps.get_branch_schema(args.name, args.branch),
    ),
    ToolDeclaration(
        name="listDeployRequests",
        description="List all deploy requests for the given database.",
        arguments_model=DatabaseArguments,
        handler=lambda ps, args: ps.list_deploy_requests(args.name),
    ),
    ToolDeclaration(
        name="getDeployRequest",
        description="Get a specific deploy request for a database.",
        arguments_model=DeployRequestArguments,
        handler=lambda ps, args: ps.get_deploy_request(args.name, args.requestID),
    ),
)

_TOOLS_BY_NAME = {tool.name: tool for tool in TOOLS}


def openai_tools() -> list[dict[str, Any]]:
    """Render all declarations in the chat completions `tools` format."""
    return [tool.openai_tool() for tool in TOOLS]


def get_tool(name: str) -> ToolDeclaration | None:
    return _TOOLS_BY_NAME.get(name)


@dataclass(frozen=True)
class ArgumentsDecoded:
    value: BaseModel


@dataclass(frozen=True)
class ArgumentsRejected:
    message: str


ArgumentsResult = Union[ArgumentsDecoded, ArgumentsRejected]


def decode_arguments(tool: ToolDeclaration, raw: Any) -> ArgumentsResult:
    """Decode and validate raw tool-call arguments without raising."""
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        raw = "{}"
    if isinstance(raw, str):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            return ArgumentsRejected(f"arguments are not valid JSON: {exc.msg}")
    else:
        parsed = raw

    if not isinstance(parsed, dict):
        return ArgumentsRejected("arguments must be a JSON object")

    try:
        return ArgumentsDecoded(tool.arguments_model.model_validate(parsed))
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in err.get('loc', ())) or '<root>'}: {err.get('msg')}"
            for err in exc.errors()
        )
        return ArgumentsRejected(f"invalid arguments for {tool.name}: {problems}")


def _rejection(error: str, message: str) -> dict[str, Any]:
    return {"ok": False, "error": error, "message": message}


async def invoke_tool(name: str, raw_arguments: Any, client: PscaleClient) -> dict[str, Any]:
    """Run one tool call and return the payload fed back to the model.

    Argument problems and unknown names come back as failure payloads so the
    model can correct itself; transport errors from the client propagate.
    """
    tool = get_tool(name)
    if tool is None:
        LOG.warning("model requested unknown tool name=%s", name)
        client.narrate(f"Unknown tool `{name}`")
        return _rejection("unknown_tool", f"Unknown tool '{name}'")

    decoded = decode_arguments(tool, raw_arguments)
    if isinstance(decoded, ArgumentsRejected):
        LOG.warning("rejected tool call name=%s reason=%s", name, decoded.message)
        client.narrate(f"Invalid arguments for `{name}`")
        return _rejection("invalid_arguments", decoded.message)

    result = await tool.handler(client, decoded.value)
    payload = result.to_payload()
    if LOG.isEnabledFor(logging.DEBUG):
        LOG.debug("function call result name=%s result=%s", name, to_bounded_json(payload))
    return payload
