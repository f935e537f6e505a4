# polychat/core/tools.py
"""
Tool registry for in-band tool calls.

Each tool declares a name, a description and a JSON input schema that is
passed to the provider, plus an async `execute(input)` that runs when the
model asks for it. Tools may be invoked zero or more times per turn, in any
order the model chooses, bounded by MAX_STEPS generation steps.

A failing tool never aborts the turn: `ToolRegistry.invoke` always returns a
ToolCallResult, with `error` set when something went wrong, and the model
decides how to continue.
"""

import asyncio
import json
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError
from openai import AsyncOpenAI, OpenAIError

from polychat.config.settings import Settings
from polychat.core.errors import ToolExecutionError
from polychat.core.events import ToolCallResult
from polychat.utils.logging import get_logger

logger = get_logger(__name__)

# Hard cap on generation steps per turn (each step = one model call)
MAX_STEPS = 10

# Display names shown while a tool runs
TOOL_DISPLAY_NAMES: Dict[str, str] = {
    "webSearch": "Searching the web",
}


@dataclass
class Tool:
    name: str
    description: str
    input_schema: Dict[str, Any]
    execute: Callable[[Dict[str, Any]], Awaitable[Any]]

    @property
    def display_name(self) -> str:
        return TOOL_DISPLAY_NAMES.get(self.name, self.name)

    def json_schema(self) -> Dict[str, Any]:
        """Return the tool descriptor in OpenAI function-calling format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_schema,
            },
        }


def _check_input(schema: Dict[str, Any], args: Dict[str, Any]) -> None:
    """
    Validate tool arguments against the tool's JSON schema (Draft 7).
    Models occasionally send incomplete or extra arguments; report them as tool errors.
    """
    if not schema:
        return

    try:
        errors = list(Draft7Validator(schema).iter_errors(args))
    except SchemaError as e:
        raise ToolExecutionError(f"Invalid tool input schema: {e.message}") from e

    if errors:
        messages = []
        for error in errors[:5]:
            path = ".".join(str(p) for p in error.absolute_path) if error.absolute_path else "root"
            messages.append(f"{path}: {error.message}")
        raise ToolExecutionError(f"Argument validation failed: {'; '.join(messages)}")


class ToolRegistry:
    def __init__(self, timeout_seconds: float = 30.0) -> None:
        self._tools: Dict[str, Tool] = {}
        self.timeout_seconds = timeout_seconds

    def register(self, tool: Tool) -> Tool:
        if tool.name in self._tools:
            raise ValueError(f"Tool {tool.name!r} is already registered")
        self._tools[tool.name] = tool
        return tool

    def get(self, name: str) -> Optional[Tool]:
        return self._tools.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def names(self) -> List[str]:
        return list(self._tools)

    def schemas(self) -> List[Dict[str, Any]]:
        return [tool.json_schema() for tool in self._tools.values()]

    def display_name(self, name: str) -> str:
        return TOOL_DISPLAY_NAMES.get(name, name)

    async def invoke(self, tool_call_id: str, name: str, arguments: Any) -> ToolCallResult:
        """
        Run one tool call and wrap the outcome as a ToolCallResult.

        `arguments` is either the raw JSON text the model produced or an
        already-decoded dict.
        """
        t0 = time.monotonic()
        tool = self._tools.get(name)
        if tool is None:
            logger.warning("[tool] call_id=%s unknown tool=%s", tool_call_id, name)
            return ToolCallResult(tool_call_id=tool_call_id, name=name, error=f"Unknown tool: {name}")

        try:
            args = parse_arguments(arguments)
            _check_input(tool.input_schema, args)
            output = await asyncio.wait_for(tool.execute(args), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            error = f"Tool {name} timed out after {self.timeout_seconds:g}s"
        except ToolExecutionError as e:
            error = str(e)
        except Exception as e:
            logger.exception("[tool] call_id=%s tool=%s raised", tool_call_id, name)
            error = f"{e.__class__.__name__}: {e}"
        else:
            dt_ms = int((time.monotonic() - t0) * 1000)
            logger.info("[tool] call_id=%s tool=%s OK latency_ms=%d", tool_call_id, name, dt_ms)
            return ToolCallResult(tool_call_id=tool_call_id, name=name, output=output)

        dt_ms = int((time.monotonic() - t0) * 1000)
        logger.warning("[tool] call_id=%s tool=%s FAIL latency_ms=%d err=%s", tool_call_id, name, dt_ms, error)
        return ToolCallResult(tool_call_id=tool_call_id, name=name, error=error)


def parse_arguments(arguments: Any) -> Dict[str, Any]:
    if isinstance(arguments, dict):
        return arguments
    text = (arguments or "").strip() if isinstance(arguments, str) else ""
    if not text:
        return {}
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ToolExecutionError(f"Tool arguments are not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ToolExecutionError("Tool arguments must be a JSON object")
    return data


# ---------------------------------------------------------------------------
# Built-in tools
# ---------------------------------------------------------------------------

WEB_SEARCH_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "query": {
            "type": "string",
            "description": "The search query",
            "minLength": 1,
            "maxLength": 100,
        },
    },
    "required": ["query"],
    "additionalProperties": False,
}


def _extract_sources(response: Any) -> List[Dict[str, str]]:
    """Collect url citations from a Responses API result."""
    sources: List[Dict[str, str]] = []
    for item in getattr(response, "output", None) or []:
        if getattr(item, "type", None) != "message":
            continue
        for content in getattr(item, "content", None) or []:
            for annotation in getattr(content, "annotations", None) or []:
                if getattr(annotation, "type", None) != "url_citation":
                    continue
                sources.append({
                    "title": getattr(annotation, "title", "") or "",
                    "url": getattr(annotation, "url", "") or "",
                })
    return sources


def make_web_search_tool(settings: Settings, client: Optional[AsyncOpenAI] = None) -> Tool:
    """
    Web search runs as a nested generation on a search-augmented OpenAI model.
    The client is created on first use so a missing key only fails the tool call.
    """
    state: Dict[str, Optional[AsyncOpenAI]] = {"client": client}

    def _client() -> AsyncOpenAI:
        if state["client"] is None:
            if not settings.openai_api_key:
                raise ToolExecutionError("Web search unavailable: OPENAI_API_KEY is not set")
            state["client"] = AsyncOpenAI(
                api_key=settings.openai_api_key,
                base_url=settings.openai_base_url,
                timeout=settings.openai_timeout_seconds,
                max_retries=settings.openai_max_retries,
            )
        return state["client"]

    async def web_search(args: Dict[str, Any]) -> Dict[str, Any]:
        query = args["query"].strip()
        try:
            response = await _client().responses.create(
                model=settings.web_search_model,
                input=query,
                tools=[{"type": "web_search_preview"}],
            )
        except OpenAIError as e:
            raise ToolExecutionError(f"Web search failed: {e}") from e

        text = (getattr(response, "output_text", "") or "").strip()
        return {"query": query, "text": text, "sources": _extract_sources(response)}

    return Tool(
        name="webSearch",
        description="Search the web for up-to-date information",
        input_schema=WEB_SEARCH_SCHEMA,
        execute=web_search,
    )


def build_default_tools(settings: Settings) -> ToolRegistry:
    registry = ToolRegistry(timeout_seconds=settings.tool_timeout_seconds)
    registry.register(make_web_search_tool(settings))
    return registry
