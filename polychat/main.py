# polychat/main.py
"""
polychat CLI entrypoint.

Subcommands:
- serve : run the HTTP API (uvicorn, app factory)
- chat  : terminal chat client against a running server
- list  : print stored conversations

The chat client behaves like the browser UI: the first exchange streams
without a conversation, then the conversation is created with a title taken
from the first user message and both messages are stored. Later turns pass
the conversation id so the server persists them.

Commands inside chat: /new starts a fresh conversation, /quit exits.
"""

import argparse
import os
import sys
from typing import Any, Dict, List, Optional

import requests
import uvicorn

from polychat.api.transport import DONE_SENTINEL, iter_sse_payloads
from polychat.config.settings import load_settings
from polychat.core.conversations import initial_title
from polychat.core.tools import TOOL_DISPLAY_NAMES

DEFAULT_API_BASE = os.getenv("POLYCHAT_BASE_URL", "http://127.0.0.1:3000")
REQUEST_TIMEOUT_SEC = 120


def safe_trim_slash(url: str) -> str:
    return url.rstrip("/")


# -----------------------------
# HTTP helpers
# -----------------------------

def _json_or_raise(resp: requests.Response, what: str) -> Any:
    if resp.status_code >= 400:
        try:
            detail = resp.json().get("detail", resp.text)
        except ValueError:
            detail = resp.text
        raise RuntimeError(f"{what} failed ({resp.status_code}): {detail}")
    return resp.json()


def create_conversation(api_base: str, title: str, model: Optional[str]) -> Dict[str, Any]:
    resp = requests.post(f"{api_base}/conversations", json={"title": title, "model": model}, timeout=10)
    return _json_or_raise(resp, "Create conversation")


def append_messages(api_base: str, conversation_id: int, messages: List[Dict[str, str]]) -> List[Dict[str, Any]]:
    resp = requests.post(
        f"{api_base}/conversations/{conversation_id}/messages",
        json={"messages": messages},
        timeout=10,
    )
    return _json_or_raise(resp, "Store messages")


def stream_turn(
    api_base: str,
    messages: List[Dict[str, str]],
    model: Optional[str],
    system_prompt: Optional[str],
    conversation_id: Optional[int],
) -> str:
    """
    POST one turn to /chat, print it as it streams, return the assistant text.
    Works with both stream framings.
    """
    payload: Dict[str, Any] = {"messages": messages}
    if model:
        payload["model"] = model
    if system_prompt:
        payload["systemPrompt"] = system_prompt
    if conversation_id is not None:
        payload["conversationId"] = conversation_id

    text_parts: List[str] = []
    with requests.post(f"{api_base}/chat", json=payload, stream=True, timeout=REQUEST_TIMEOUT_SEC) as resp:
        if resp.status_code >= 400:
            _json_or_raise(resp, "Chat")

        for frame in iter_sse_payloads(resp.iter_lines(decode_unicode=True)):
            if frame == DONE_SENTINEL:
                break
            if not isinstance(frame, dict):
                continue

            ftype = frame.get("type")
            if ftype == "text-delta" or (ftype is None and "content" in frame):
                chunk = frame.get("delta") if ftype else frame.get("content")
                text_parts.append(chunk or "")
                print(chunk or "", end="", flush=True)
            elif ftype and ftype.startswith("tool-"):
                name = ftype[len("tool-"):]
                title = frame.get("title") or TOOL_DISPLAY_NAMES.get(name, name)
                if frame.get("state") == "input-streaming":
                    print(f"\n[{title}...]", flush=True)
                elif frame.get("state") == "output-error":
                    print(f"\n[{title} failed: {frame.get('errorText')}]", flush=True)
            elif ftype == "error" or (ftype is None and "error" in frame):
                print()
                raise RuntimeError(frame.get("errorText") or frame.get("error"))
    print()
    return "".join(text_parts)


# -----------------------------
# Subcommands
# -----------------------------

def run_serve(args: argparse.Namespace) -> int:
    settings = load_settings()
    uvicorn.run(
        "polychat.api.server:create_app",
        factory=True,
        host=args.host or settings.host,
        port=args.port or settings.port,
        reload=args.reload,
    )
    return 0


def run_list(args: argparse.Namespace) -> int:
    api_base = safe_trim_slash(args.api_base)
    try:
        resp = requests.get(f"{api_base}/conversations", timeout=10)
        conversations = _json_or_raise(resp, "List conversations")
    except (requests.RequestException, RuntimeError) as e:
        print(f"[error] {e}", file=sys.stderr)
        return 1

    if not conversations:
        print("No conversations yet.")
    for conv in conversations:
        print(f"{conv['id']:>4}  {conv['updated_at'][:19]}  {conv.get('model') or '-':<24}  {conv['title']}")
    return 0


def run_chat(args: argparse.Namespace) -> int:
    api_base = safe_trim_slash(args.api_base)
    history: List[Dict[str, str]] = []
    conversation_id: Optional[int] = args.conversation

    if conversation_id is not None:
        try:
            resp = requests.get(f"{api_base}/conversations/{conversation_id}", timeout=10)
            conv = _json_or_raise(resp, "Load conversation")
        except (requests.RequestException, RuntimeError) as e:
            print(f"[error] {e}", file=sys.stderr)
            return 1
        history = [{"role": m["role"], "content": m["content"]} for m in conv["messages"]]
        print(f"[Continuing '{conv['title']}' with {len(history)} messages]")

    print(f"polychat ({args.model or 'server default model'}). /new for a new conversation, /quit to exit.\n")

    while True:
        try:
            user = input("You: ").strip()
        except (EOFError, KeyboardInterrupt):
            print("\n[Session ended]")
            return 0

        if not user:
            continue
        if user.lower() in {"/quit", "/exit"}:
            print("[Session ended]")
            return 0
        if user.lower() == "/new":
            history, conversation_id = [], None
            print("[New conversation]\n")
            continue

        history.append({"role": "user", "content": user})
        print("Assistant: ", end="", flush=True)
        try:
            reply = stream_turn(api_base, history, args.model, args.system, conversation_id)
        except (requests.RequestException, RuntimeError) as e:
            print(f"[error] {e}")
            history.pop()
            continue

        history.append({"role": "assistant", "content": reply})

        # First exchange: create the conversation now and store both messages
        if conversation_id is None and reply:
            try:
                conv = create_conversation(api_base, initial_title(user), args.model)
                conversation_id = conv["id"]
                append_messages(api_base, conversation_id, history[-2:])
            except (requests.RequestException, RuntimeError) as e:
                print(f"[warn] Could not save conversation: {e}")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="polychat", description="Multi-provider streaming chat.")
    sub = p.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP API.")
    serve.add_argument("--host", default=None, help="Bind address (default: HOST or 127.0.0.1).")
    serve.add_argument("--port", type=int, default=None, help="Port (default: PORT or 3000).")
    serve.add_argument("--reload", action="store_true", help="Reload on code changes (development).")
    serve.set_defaults(func=run_serve)

    chat = sub.add_parser("chat", help="Chat in the terminal against a running server.")
    chat.add_argument("--api-base", default=DEFAULT_API_BASE, help=f"Server URL (default: {DEFAULT_API_BASE}).")
    chat.add_argument("--model", default=None, help="Model id, see GET /models.")
    chat.add_argument("--system", default=None, help="System prompt for every turn.")
    chat.add_argument("--conversation", type=int, default=None, help="Continue an existing conversation id.")
    chat.set_defaults(func=run_chat)

    lst = sub.add_parser("list", help="List stored conversations.")
    lst.add_argument("--api-base", default=DEFAULT_API_BASE, help=f"Server URL (default: {DEFAULT_API_BASE}).")
    lst.set_defaults(func=run_list)
    return p


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
