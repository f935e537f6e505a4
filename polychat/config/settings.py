# polychat/config/settings.py

from dataclasses import dataclass, field
import os
from pathlib import Path
from typing import Optional, Tuple

from dotenv import load_dotenv

# Expose BASE_DIR for other modules
BASE_DIR = Path(__file__).resolve().parents[2]
ENV_PATH = BASE_DIR / ".env"
load_dotenv(dotenv_path=ENV_PATH)

DEFAULT_DB_PATH = BASE_DIR / "polychat" / "data" / "polychat.db"
DEFAULT_LMSTUDIO_BASE_URL = "http://localhost:1234/v1"
ANTHROPIC_COMPAT_BASE_URL = "https://api.anthropic.com/v1/"
GOOGLE_COMPAT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/openai/"

STREAM_PROTOCOLS = ("ui", "plain")


@dataclass
class Settings:
    # Provider credentials; any of them may be missing; the registry reports it per request
    openai_api_key: Optional[str] = None
    anthropic_api_key: Optional[str] = None
    google_api_key: Optional[str] = None

    # Endpoint overrides (None = vendor default)
    openai_base_url: Optional[str] = None
    anthropic_base_url: str = ANTHROPIC_COMPAT_BASE_URL
    google_base_url: str = GOOGLE_COMPAT_BASE_URL
    lmstudio_base_url: str = DEFAULT_LMSTUDIO_BASE_URL

    # Model table extensions
    lmstudio_models: Tuple[str, ...] = field(default_factory=tuple)
    extra_models: Tuple[str, ...] = field(default_factory=tuple)

    default_model: str = "gpt-4.1-mini"
    web_search_model: str = "gpt-4.1-mini"

    # Database path
    db_path: str = str(DEFAULT_DB_PATH)

    # HTTP server
    host: str = "127.0.0.1"
    port: int = 3000
    stream_protocol: str = "ui"

    # Quality/latency tuning knobs
    openai_timeout_seconds: float = 60.0   # total request timeout
    openai_max_retries: int = 2           # SDK retries for connection-level failures
    tool_timeout_seconds: float = 30.0    # per tool call


def _strip_outer_quotes(s: str) -> str:
    """
    Users sometimes put KEY="value" including quotes.
    This removes a single pair of matching outer quotes.
    """
    s2 = (s or "").strip()
    if len(s2) >= 2 and ((s2[0] == s2[-1]) and s2[0] in ("'", '"')):
        return s2[1:-1].strip()
    return s2


def _optional_env(name: str) -> Optional[str]:
    value = _strip_outer_quotes(os.getenv(name, ""))
    return value or None


def _parse_float_env(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
        # safeguard: enforce positive
        return value if value > 0 else default
    except ValueError:
        return default


def _parse_int_env(name: str, default: int, min_val: int = 0, max_val: int = 10) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
        # safeguard: clamp into sane range
        return max(min_val, min(max_val, value))
    except ValueError:
        return default


def _parse_list_env(name: str) -> Tuple[str, ...]:
    raw = _strip_outer_quotes(os.getenv(name, ""))
    items = [part.strip() for part in raw.split(",")]
    return tuple(item for item in items if item)


def normalize_api_base(raw: Optional[str], default: str = DEFAULT_LMSTUDIO_BASE_URL) -> str:
    """
    Ensures an OpenAI-compatible base URL ends with /v1.

    LM Studio and most local servers mount the chat completions API under /v1;
    users often configure just host:port.
    """
    base = _strip_outer_quotes((raw or default).strip())

    if not (base.startswith("http://") or base.startswith("https://")):
        raise RuntimeError(f"Base URL is invalid (missing scheme): {base!r}")

    # Remove trailing slashes
    while base.endswith("/"):
        base = base[:-1]

    # If user accidentally passed a full endpoint like .../v1/chat/completions, trim to /v1
    if "/v1/" in base:
        return base.split("/v1/")[0] + "/v1"

    if base.endswith("/v1"):
        return base

    return base + "/v1"


def load_settings() -> Settings:
    """
    Load configuration from environment variables (and defaults).
    Provider keys are optional here; a missing key only fails the requests
    that need it. Also ensures the DB directory exists.
    """
    # --- Provider credentials ---
    openai_api_key = _optional_env("OPENAI_API_KEY")
    anthropic_api_key = _optional_env("ANTHROPIC_API_KEY")
    google_api_key = _optional_env("GOOGLE_API_KEY")

    # --- Endpoints ---
    openai_base_url = _optional_env("OPENAI_BASE_URL")
    anthropic_base_url = _optional_env("ANTHROPIC_BASE_URL") or ANTHROPIC_COMPAT_BASE_URL
    google_base_url = _optional_env("GOOGLE_BASE_URL") or GOOGLE_COMPAT_BASE_URL
    lmstudio_base_url = normalize_api_base(_optional_env("LMSTUDIO_BASE_URL"))

    # --- Models ---
    default_model = _optional_env("DEFAULT_MODEL") or "gpt-4.1-mini"
    web_search_model = _optional_env("WEB_SEARCH_MODEL") or "gpt-4.1-mini"

    # --- Stream protocol (normalized + safeguarded) ---
    raw_protocol = (os.getenv("CHAT_STREAM_PROTOCOL", "ui").strip().lower() or "ui")
    if raw_protocol not in STREAM_PROTOCOLS:
        # Safeguard: fall back to the rich framing if unsupported protocol is configured
        raw_protocol = "ui"

    # --- DB path (optional override) ---
    db_path = Path(_optional_env("POLYCHAT_DB_PATH") or str(DEFAULT_DB_PATH))

    # Ensure data directory exists for DB
    db_path.parent.mkdir(parents=True, exist_ok=True)

    settings = Settings(
        openai_api_key=openai_api_key,
        anthropic_api_key=anthropic_api_key,
        google_api_key=google_api_key,
        openai_base_url=openai_base_url,
        anthropic_base_url=anthropic_base_url,
        google_base_url=google_base_url,
        lmstudio_base_url=lmstudio_base_url,
        lmstudio_models=_parse_list_env("LMSTUDIO_MODELS"),
        extra_models=_parse_list_env("POLYCHAT_EXTRA_MODELS"),
        default_model=default_model,
        web_search_model=web_search_model,
        db_path=str(db_path),
        host=_optional_env("HOST") or "127.0.0.1",
        port=_parse_int_env("PORT", 3000, min_val=1, max_val=65535),
        stream_protocol=raw_protocol,
        openai_timeout_seconds=_parse_float_env("OPENAI_TIMEOUT_SECONDS", 60.0),
        openai_max_retries=_parse_int_env("OPENAI_MAX_RETRIES", 2, min_val=0, max_val=5),
        tool_timeout_seconds=_parse_float_env("TOOL_TIMEOUT_SECONDS", 30.0),
    )

    return settings
