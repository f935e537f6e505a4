# polychat/clients/openai_client.py
#
# Single integration layer for OpenAI-compatible chat completions.
# OpenAI, Anthropic and Google are reached through their OpenAI-compatible
# endpoints; LM Studio serves the same API locally. Only base_url and key differ.

import json
import random
import time
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx
from openai import AsyncOpenAI, OpenAIError

from polychat.core.errors import ToolExecutionError, UpstreamStreamError
from polychat.core.events import StreamEvent, TextDelta, ToolCallResult, ToolCallStart
from polychat.core.tools import MAX_STEPS, ToolRegistry, parse_arguments
from polychat.utils.logging import get_logger

logger = get_logger(__name__)

# ---------------------------------------------------------------------------
# request_id for logs
# ---------------------------------------------------------------------------

def _mk_req_id(prefix: str = "req") -> str:
    return f"{prefix}_{int(time.time()*1000)}_{random.randint(1000, 9999)}"

def _safe_host_from_url(url: Optional[str]) -> str:
    u = (url or "").strip()
    if not u:
        return "default-host"
    u = u.replace("https://", "").replace("http://", "")
    return u.split("/")[0] or "unknown-host"

# ---------------------------------------------------------------------------
# Error classification helpers
# ---------------------------------------------------------------------------

def _classify_openai_error(e: BaseException) -> str:
    name = e.__class__.__name__.lower()
    msg = (str(e) or "").lower()
    status = getattr(e, "status_code", None)

    if status == 401 or "authentication" in name or "incorrect api key" in msg:
        return "upstream_auth"

    if status == 404 or "notfound" in name:
        return "upstream_404_not_found"

    if status == 429 or "ratelimit" in name or "rate limit" in msg:
        return "upstream_rate_limit"

    if "timeout" in name or "timed out" in msg:
        return "upstream_timeout"

    if status in (502, 503) or "bad gateway" in msg or "service unavailable" in msg:
        return f"upstream_{status or 'unavailable'}"

    if "connection" in name or "connection" in msg or "dns" in msg:
        return "upstream_network"

    return "upstream_unknown"

# ---------------------------------------------------------------------------
# Streaming chat with an in-band tool step loop
# ---------------------------------------------------------------------------

class OpenAICompatibleClient:
    """
    Streams chat completions from one OpenAI-compatible backend.

    `generate_text` is a single-pass async generator of StreamEvents. Closing
    it (or cancelling the task consuming it) closes the underlying HTTP stream.
    """

    def __init__(
        self,
        provider: str,
        api_key: str,
        base_url: Optional[str] = None,
        timeout: float = 60.0,
        max_retries: int = 2,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        self.provider = provider
        self.base_url = base_url
        self._client = client or AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            timeout=timeout,
            max_retries=max_retries,
        )

    async def generate_text(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        tools: Optional[ToolRegistry] = None,
        max_steps: int = MAX_STEPS,
    ) -> AsyncIterator[StreamEvent]:
        req_id = _mk_req_id("chat")
        conversation = [dict(m) for m in messages]
        tool_schemas = tools.schemas() if tools is not None and len(tools) else None

        logger.info("[chat] req_id=%s start provider=%s model=%s host=%s msg_count=%d tools=%d",
                    req_id, self.provider, model, _safe_host_from_url(self.base_url),
                    len(conversation), len(tool_schemas or []))

        t0 = time.monotonic()
        for step in range(1, max(1, max_steps) + 1):
            calls: Dict[int, Dict[str, str]] = {}
            content_parts: List[str] = []

            kwargs: Dict[str, Any] = {"model": model, "messages": conversation, "stream": True}
            if tool_schemas:
                kwargs["tools"] = tool_schemas

            try:
                stream = await self._client.chat.completions.create(**kwargs)
            except OpenAIError as e:
                raise self._upstream_error(req_id, step, e) from e

            try:
                async for chunk in stream:
                    for choice in getattr(chunk, "choices", None) or []:
                        delta = getattr(choice, "delta", None)
                        if delta is None:
                            continue
                        text = getattr(delta, "content", None)
                        if text:
                            content_parts.append(text)
                            yield TextDelta(text)
                        for tc in getattr(delta, "tool_calls", None) or []:
                            _accumulate_tool_call(calls, tc)
            except (OpenAIError, httpx.HTTPError) as e:
                raise self._upstream_error(req_id, step, e) from e
            finally:
                await stream.close()

            if not calls:
                dt_ms = int((time.monotonic() - t0) * 1000)
                logger.info("[chat] req_id=%s OK steps=%d latency_ms=%d provider=%s model=%s",
                            req_id, step, dt_ms, self.provider, model)
                return

            ordered = [calls[idx] for idx in sorted(calls)]
            conversation.append({
                "role": "assistant",
                "content": "".join(content_parts) or None,
                "tool_calls": [
                    {
                        "id": call["id"],
                        "type": "function",
                        "function": {"name": call["name"], "arguments": call["arguments"]},
                    }
                    for call in ordered
                ],
            })

            for call in ordered:
                try:
                    call_input = parse_arguments(call["arguments"])
                except ToolExecutionError:
                    call_input = {"raw": call["arguments"]}
                yield ToolCallStart(tool_call_id=call["id"], name=call["name"], input=call_input)

                if tools is None:
                    result = ToolCallResult(tool_call_id=call["id"], name=call["name"],
                                            error="No tools are available for this turn")
                else:
                    result = await tools.invoke(call["id"], call["name"], call["arguments"])
                yield result

                payload = {"error": result.error} if result.failed else result.output
                conversation.append({
                    "role": "tool",
                    "tool_call_id": call["id"],
                    "content": json.dumps(payload, ensure_ascii=False, default=str),
                })

        logger.warning("[chat] req_id=%s step cap reached (max_steps=%d) provider=%s model=%s",
                       req_id, max_steps, self.provider, model)

    def _upstream_error(self, req_id: str, step: int, e: Exception) -> UpstreamStreamError:
        code = _classify_openai_error(e)
        logger.error("[chat] req_id=%s FAIL step=%d provider=%s code=%s err=%s",
                     req_id, step, self.provider, code, str(e))
        return UpstreamStreamError(f"{self.provider} request failed: {e}", code=code)


def _accumulate_tool_call(calls: Dict[int, Dict[str, str]], tc: Any) -> None:
    """Merge one streamed tool-call fragment into the per-index accumulator."""
    idx = getattr(tc, "index", None)
    if idx is None:
        idx = len(calls)
    entry = calls.setdefault(idx, {"id": "", "name": "", "arguments": ""})
    if getattr(tc, "id", None):
        entry["id"] = tc.id
    fn = getattr(tc, "function", None)
    if fn is not None:
        if getattr(fn, "name", None):
            entry["name"] = fn.name
        if getattr(fn, "arguments", None):
            entry["arguments"] += fn.arguments
    if not entry["id"]:
        entry["id"] = f"call_{idx}"
