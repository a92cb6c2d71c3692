"""
Pytest configuration and shared fixtures.

This file is automatically loaded by pytest and provides:
- Project root on sys.path (flat module layout)
- Environment defaults set before the app module loads its config
- Shared config / data-URI fixtures
"""

import base64
import os
import sys
from pathlib import Path

import pytest

project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# The app loads config at import time, so these must be set during collection.
os.environ.setdefault("GEMINI_API_KEY", "test-key")
os.environ.setdefault("LOG_LEVEL", "DEBUG")
os.environ.setdefault("LOG_PATH", "/tmp/chat_relay_test.log")
os.environ.setdefault("LOG_COLOR", "false")

from config import AppConfig  # noqa: E402

PNG_BYTES = (
    b"\x89PNG\r\n\x1a\n\x00\x00\x00\rIHDR\x00\x00\x00\x01\x00\x00\x00\x01"
    b"\x08\x06\x00\x00\x00\x1f\x15\xc4\x89\x00\x00\x00\nIDATx\x9cc\x00\x01"
    b"\x00\x00\x05\x00\x01\r\n-\xb4\x00\x00\x00\x00IEND\xaeB`\x82"
)


def make_config(**overrides) -> AppConfig:
    """Build a fully explicit config; tests never depend on the environment."""
    values = dict(
        gemini_base_url="https://generativelanguage.googleapis.com",
        gemini_api_key="test-key",
        gemini_api_version="v1beta",
        model_override="",
        fallback_models=("bad-model", "good-model"),
        system_prompt="You are a nutrition assistant.",
        system_placement="field",
        system_ack="Understood.",
        history_window=6,
        default_image_prompt="Analyze this photo nutritionally.",
        default_greeting="Hello!",
        temperature=0.4,
        top_p=0.8,
        top_k=40,
        max_output_tokens=1024,
        request_timeout_s=5.0,
        stream_idle_timeout_s=5.0,
        max_request_bytes=2_000_000,
        expose_upstream_errors=True,
        port=3000,
        log_level="DEBUG",
        log_path="/tmp/chat_relay_test.log",
        user_agent="test-agent",
    )
    values.update(overrides)
    return AppConfig(**values)


@pytest.fixture
def test_config():
    """Create test configuration."""
    return make_config()


@pytest.fixture
def png_bytes():
    return PNG_BYTES


@pytest.fixture
def png_data_uri():
    return "data:image/png;base64," + base64.b64encode(PNG_BYTES).decode("ascii")
