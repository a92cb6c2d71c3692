"""Startup helpers: .env loading and config dump."""

from __future__ import annotations

import logging
from pathlib import Path

from dotenv import load_dotenv

from config import AppConfig
from logger import LOGGER_NAME, mask_secret

log = logging.getLogger(LOGGER_NAME)


def load_env_files() -> None:
    """Load .env files from program and current directory."""
    this_dir = Path(__file__).resolve().parent
    p1 = this_dir / ".env"
    p2 = Path.cwd() / ".env"

    loaded_any = False
    if p1.exists():
        loaded_any = load_dotenv(dotenv_path=str(p1), override=True) or loaded_any
        log.info("Loaded .env from %s", str(p1))
    else:
        log.info("No .env in program directory: %s", str(p1))

    if p2.exists() and p2 != p1:
        loaded_any = load_dotenv(dotenv_path=str(p2), override=True) or loaded_any
        log.info("Loaded .env from %s", str(p2))
    elif p2 != p1:
        log.info("No .env in current directory: %s", str(p2))

    if not loaded_any:
        log.info(".env not loaded (not found or no variables applied).")


def dump_config(config: AppConfig) -> None:
    """Log effective configuration at startup."""
    log.info("=== Chat relay startup config ===")
    log.info("GEMINI_BASE_URL=%s", config.gemini_base_url)
    log.info("GEMINI_API_VERSION=%s", config.gemini_api_version)
    log.info(
        "GEMINI_API_KEY_set=%s value=%s len=%s",
        bool(config.gemini_api_key),
        mask_secret(config.gemini_api_key),
        len(config.gemini_api_key or ""),
    )
    log.info("GEMINI_MODEL=%r", config.model_override)
    log.info("GEMINI_FALLBACK_MODELS=%s", list(config.fallback_models))
    log.info("SYSTEM_PROMPT len=%d preview=%r", len(config.system_prompt), config.system_prompt[:80])
    log.info("SYSTEM_PROMPT_PLACEMENT=%s", config.system_placement)
    log.info("HISTORY_WINDOW=%s", config.history_window)
    log.info(
        "TEMPERATURE=%s TOP_P=%s TOP_K=%s MAX_OUTPUT_TOKENS=%s",
        config.temperature,
        config.top_p,
        config.top_k,
        config.max_output_tokens,
    )
    log.info("REQUEST_TIMEOUT_S=%s", config.request_timeout_s)
    log.info("STREAM_IDLE_TIMEOUT_S=%s", config.stream_idle_timeout_s)
    log.info("MAX_REQUEST_BYTES=%s", config.max_request_bytes)
    log.info("EXPOSE_UPSTREAM_ERRORS=%s", config.expose_upstream_errors)
    log.info("LOG_LEVEL=%s", config.log_level)
    log.info("LOG_PATH=%s", config.log_path)
    log.info("USER_AGENT=%s", config.user_agent)
    log.info("WorkingDir=%s", str(Path.cwd()))
    log.info("ProgramDir=%s", str(Path(__file__).resolve().parent))
    log.info("===============================")
