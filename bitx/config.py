from pydantic import BaseModel
import json
import os
import logging
from pathlib import Path
from typing import List

logger = logging.getLogger(__name__)

# Load .env file if it exists (before reading os.getenv)
_env_path = Path(__file__).resolve().parent.parent / ".env"
if _env_path.exists():
    with open(_env_path) as f:
        for line in f:
            line = line.strip()
            if line and not line.startswith("#") and "=" in line:
                key, _, value = line.partition("=")
                key = key.strip()
                value = value.strip()
                # Only set if not already in environment (env vars take precedence)
                if key not in os.environ:
                    os.environ[key] = value


def _sanitize_ascii(val: str) -> str:
    """Strip non-ASCII characters from config values (prevents encoding errors)"""
    return val.encode('ascii', errors='ignore').decode('ascii').strip()


def _json_list(val: str) -> List[str]:
    """Parse a JSON array env value like '["getMiningPools"]'; anything else is empty."""
    if not val:
        return []
    try:
        parsed = json.loads(val)
    except json.JSONDecodeError:
        logger.warning(f"Config: ignoring malformed JSON list {val!r}")
        return []
    return [str(v) for v in parsed] if isinstance(parsed, list) else []


class Settings(BaseModel):
    # Network
    http_host: str = os.getenv("BITX_HTTP_HOST", "0.0.0.0")
    http_port: int = int(os.getenv("BITX_HTTP_PORT", "8000"))

    # Storage
    database_url: str = os.getenv("DATABASE_URL", "")

    # LLM (OpenAI-compatible: OpenAI, OpenRouter, Groq, Ollama)
    openai_api_key: str = _sanitize_ascii(os.getenv("OPENAI_API_KEY", ""))
    openai_base_url: str = _sanitize_ascii(os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1"))
    openai_chat_model: str = _sanitize_ascii(os.getenv("OPENAI_MODEL_NAME", "gpt-4o"))
    orchestrator_model: str = _sanitize_ascii(os.getenv("ORCHESTRATOR_MODEL", "gpt-4o-mini"))
    use_orchestrator: bool = os.getenv("USE_ORCHESTRATOR", "true").lower() in ("1", "true", "yes")

    # Chat loop
    max_token_messages: int = int(os.getenv("MAX_TOKEN_MESSAGES", "10"))
    max_steps: int = int(os.getenv("MAX_STEPS", "15"))
    free_messages: int = int(os.getenv("FREE_MESSAGES", "10"))

    # Tools
    disabled_tools: List[str] = _json_list(os.getenv("DISABLED_TOOLS", os.getenv("NEXT_PUBLIC_DISABLED_TOOLS", "")))
    ordiscan_api_key: str = _sanitize_ascii(os.getenv("ORDISCAN_API_KEY", ""))
    magic_eden_api_key: str = _sanitize_ascii(os.getenv("MAGIC_EDEN_API_KEY", ""))
    http_timeout_s: float = float(os.getenv("TOOL_HTTP_TIMEOUT", "15"))

    # Auth (Privy)
    privy_app_id: str = _sanitize_ascii(os.getenv("PRIVY_APP_ID", os.getenv("NEXT_PUBLIC_PRIVY_APP_ID", "")))
    privy_verification_key: str = os.getenv("PRIVY_VERIFICATION_KEY", "").replace("\\n", "\n")
    privy_cookie_name: str = os.getenv("PRIVY_COOKIE_NAME", "privy-token")

    # Cron / scheduled actions
    cron_secret: str = os.getenv("CRON_SECRET", "")
    action_scheduler_enabled: bool = os.getenv("ACTION_SCHEDULER_ENABLED", "false").lower() in ("1", "true", "yes")
    action_check_interval_s: int = int(os.getenv("ACTION_CHECK_INTERVAL", "900"))

    # Subscriptions
    receive_wallet_address: str = _sanitize_ascii(
        os.getenv("RECEIVE_WALLET_ADDRESS", os.getenv("NEXT_PUBLIC_EAP_RECEIVE_WALLET_ADDRESS", ""))
    )
    verify_payments: bool = os.getenv("VERIFY_PAYMENTS", "false").lower() in ("1", "true", "yes")


settings = Settings()


def validate_settings():
    """Refuse to serve chat traffic without the credentials it depends on."""
    missing = [
        name for name, value in (
            ("PRIVY_APP_ID", settings.privy_app_id),
            ("PRIVY_VERIFICATION_KEY", settings.privy_verification_key),
            ("OPENAI_API_KEY", settings.openai_api_key),
        ) if not value
    ]
    if missing:
        raise SystemExit(
            "FATAL: missing required environment variables: " + ", ".join(missing)
        )

    # Log config for debugging
    _oai_key = '***' + settings.openai_api_key[-4:] if len(settings.openai_api_key) > 4 else 'EMPTY'
    logger.info(f"Config: LLM → {settings.openai_base_url} (key={_oai_key}), model={settings.openai_chat_model}")
    logger.info(f"Config: orchestrator={'on' if settings.use_orchestrator else 'off'} ({settings.orchestrator_model})")
    if settings.disabled_tools:
        logger.info(f"Config: disabled tools {settings.disabled_tools}")
