"""Configuration management for the chat relay service."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import List, Tuple

DEFAULT_FALLBACK_MODELS: Tuple[str, ...] = (
    "gemini-2.5-flash",
    "gemini-2.0-flash",
    "gemini-1.5-flash",
    "gemini-1.5-flash-latest",
)

DEFAULT_SYSTEM_PROMPT = (
    "Você é o Nutrik.IA, um assistente nutricional amigável, ágil e técnico. "
    "Filtre alimentos em fotos, estime gramas e informe macronutrientes "
    "(Proteínas, Carboidratos, Gorduras e Calorias) usando <strong> para destacar números. "
    "Se o usuário informar peso, altura, idade e objetivo, calcule a Taxa Metabólica Basal "
    "e a faixa calórica diária ideal. Responda como uma conversa natural."
)

DEFAULT_SYSTEM_ACK = (
    "Entendido. Sou o Nutrik.IA e estou pronto para analisar sua alimentação com precisão técnica."
)

SYSTEM_PLACEMENTS = ("field", "priming")
API_VERSIONS = ("v1beta", "v1")


def _env_bool(name: str, default: bool) -> bool:
    """Get boolean environment variable with fallback."""
    v = os.getenv(name)
    if v is None or v == "":
        return default
    return v.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_float(name: str, default: float) -> float:
    """Get float environment variable with fallback."""
    v = os.getenv(name)
    if v is None or v == "":
        return default
    try:
        return float(v)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    """Get integer environment variable with fallback."""
    v = os.getenv(name)
    if v is None or v == "":
        return default
    try:
        return int(v.strip())
    except ValueError:
        return default


def _env_str(name: str, default: str) -> str:
    """Get string environment variable with fallback."""
    v = os.getenv(name)
    if v is None:
        return default
    return v


def _csv_list(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    """Parse comma-separated environment variable into an ordered tuple."""
    v = os.getenv(name, "")
    items: List[str] = [x.strip() for x in v.split(",") if x.strip()]
    return tuple(items) if items else default


@dataclass(frozen=True)
class AppConfig:
    """Application configuration."""

    # Gemini settings
    gemini_base_url: str
    gemini_api_key: str
    gemini_api_version: str

    # Candidate models (override is tried first)
    model_override: str
    fallback_models: Tuple[str, ...]

    # System framing
    system_prompt: str
    system_placement: str
    system_ack: str

    # Conversation shaping
    history_window: int
    default_image_prompt: str
    default_greeting: str

    # Generation settings
    temperature: float
    top_p: float
    top_k: int
    max_output_tokens: int

    # Timeouts and limits
    request_timeout_s: float
    stream_idle_timeout_s: float
    max_request_bytes: int

    # Error exposure policy: attach upstream error text to 500 responses
    expose_upstream_errors: bool

    # Server settings
    port: int
    log_level: str
    log_path: str
    user_agent: str

    @classmethod
    def from_env(cls) -> AppConfig:
        """Load configuration from environment variables."""
        return cls(
            gemini_base_url=_env_str("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com").rstrip("/"),
            gemini_api_key=os.getenv("GEMINI_API_KEY", ""),
            gemini_api_version=_env_str("GEMINI_API_VERSION", "v1beta").strip().lower(),
            model_override=_env_str("GEMINI_MODEL", "").strip(),
            fallback_models=_csv_list("GEMINI_FALLBACK_MODELS", DEFAULT_FALLBACK_MODELS),
            system_prompt=_env_str("SYSTEM_PROMPT", DEFAULT_SYSTEM_PROMPT),
            system_placement=_env_str("SYSTEM_PROMPT_PLACEMENT", "field").strip().lower(),
            system_ack=_env_str("SYSTEM_PROMPT_ACK", DEFAULT_SYSTEM_ACK),
            history_window=_env_int("HISTORY_WINDOW", 6),
            default_image_prompt=_env_str("DEFAULT_IMAGE_PROMPT", "Analise esta imagem nutricionalmente."),
            default_greeting=_env_str("DEFAULT_GREETING", "Olá!"),
            temperature=_env_float("TEMPERATURE", 0.4),
            top_p=_env_float("TOP_P", 0.8),
            top_k=_env_int("TOP_K", 40),
            max_output_tokens=_env_int("MAX_OUTPUT_TOKENS", 2048),
            request_timeout_s=_env_float("REQUEST_TIMEOUT_S", 30.0),
            stream_idle_timeout_s=_env_float("STREAM_IDLE_TIMEOUT_S", 20.0),
            max_request_bytes=_env_int("MAX_REQUEST_BYTES", 20_000_000),  # images travel inline
            expose_upstream_errors=_env_bool("EXPOSE_UPSTREAM_ERRORS", True),
            port=_env_int("PORT", 3000),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper().strip(),
            log_path=_env_str("LOG_PATH", "/var/log/chat-relay/chat-relay.log"),
            user_agent=_env_str("USER_AGENT", "chat-relay/0.3.0"),
        )

    def validate(self, require_api_key: bool = True) -> None:
        """Validate configuration."""
        if require_api_key and not self.gemini_api_key:
            raise ValueError("GEMINI_API_KEY is required")
        if not self.gemini_base_url:
            raise ValueError("GEMINI_BASE_URL must be non-empty")
        if self.gemini_api_version not in API_VERSIONS:
            raise ValueError(f"GEMINI_API_VERSION must be one of {API_VERSIONS}")
        if self.system_placement not in SYSTEM_PLACEMENTS:
            raise ValueError(f"SYSTEM_PROMPT_PLACEMENT must be one of {SYSTEM_PLACEMENTS}")
        if self.gemini_api_version == "v1" and self.system_placement == "field" and self.system_prompt:
            raise ValueError("SYSTEM_PROMPT_PLACEMENT=field is not supported by GEMINI_API_VERSION=v1")
        if not any(m.strip() for m in (self.model_override, *self.fallback_models)):
            raise ValueError("GEMINI_MODEL or GEMINI_FALLBACK_MODELS must name at least one model")
        if self.history_window < 0:
            raise ValueError("HISTORY_WINDOW must be >= 0")
        if self.max_output_tokens <= 0:
            raise ValueError("MAX_OUTPUT_TOKENS must be > 0")
        if self.request_timeout_s <= 0:
            raise ValueError("REQUEST_TIMEOUT_S must be > 0")
        if self.stream_idle_timeout_s <= 0:
            raise ValueError("STREAM_IDLE_TIMEOUT_S must be > 0")
        if self.max_request_bytes <= 0:
            raise ValueError("MAX_REQUEST_BYTES must be > 0")
        if not self.log_path:
            raise ValueError("LOG_PATH must be non-empty")
        if not self.user_agent:
            raise ValueError("USER_AGENT must be non-empty")


def load_config() -> AppConfig:
    """Load configuration from environment."""
    return AppConfig.from_env()
