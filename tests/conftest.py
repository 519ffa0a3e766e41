import pathlib
import sys
from typing import Any, Callable

import pytest
from pydantic import AnyHttpUrl, SecretStr

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from relaychat.config import Settings, get_settings  # noqa: E402


@pytest.fixture(autouse=True)
def clear_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def make_settings() -> Callable[..., Settings]:
    """Build settings that ignore credentials present in the environment."""

    def _make(**overrides: Any) -> Settings:
        values: dict[str, Any] = {
            "groq_api_key": SecretStr("test-groq-key"),
            "openai_api_key": None,
            "huggingface_api_key": SecretStr("test-hf-key"),
            "groq_base_url": AnyHttpUrl("https://groq.test/openai/v1"),
            "openai_base_url": AnyHttpUrl("https://openai.test/v1"),
            "image_model_url": AnyHttpUrl("https://images.test/models/sdxl"),
            "background_removal_model_url": AnyHttpUrl("https://images.test/models/rmbg"),
            "relay_url": None,
            "max_stream_seconds": None,
            "cors_allowed_origins": [],
            "turn_rules_path": None,
        }
        values.update(overrides)
        return Settings(**values)

    return _make
