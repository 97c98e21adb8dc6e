"""Pytest fixtures and configuration for follow-up engine tests.

Provides common fixtures for configuration, message construction and time.
"""

import os
from collections.abc import Callable, Generator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from followup.config_schema import AppConfig
from followup.models import RawMessage

OWNER = "me@example.com"

# Fixed "now" for every test that depends on the current time
FIXED_NOW = datetime(2025, 3, 10, 12, 0, tzinfo=UTC)


@pytest.fixture
def owner() -> str:
    """Mailbox owner address used across tests."""
    return OWNER


@pytest.fixture
def now() -> datetime:
    """Fixed current time."""
    return FIXED_NOW


@pytest.fixture
def message_factory() -> Callable[..., RawMessage]:
    """Return a factory building RawMessage objects with sensible defaults.

    sent_date may be given as a datetime or as days before FIXED_NOW.
    """

    def make(
        id: str,
        *,
        sender: str = OWNER,
        to: tuple[str, ...] = ("alice@example.com",),
        cc: tuple[str, ...] = (),
        subject: str = "Project update",
        body: str = "Please send the latest numbers when you have them.",
        sent_date: datetime | None = None,
        days_ago: float = 1,
        received_date: datetime | None = None,
        conversation_id: str | None = None,
    ) -> RawMessage:
        return RawMessage(
            id=id,
            subject=subject,
            sender=sender,
            to=to,
            cc=cc,
            sent_date=sent_date or FIXED_NOW - timedelta(days=days_ago),
            received_date=received_date,
            body=body,
            conversation_id=conversation_id,
        )

    return make


@pytest.fixture
def sample_config_dict() -> dict[str, Any]:
    """Return a config dict tuned for fast tests (no real backoff delays)."""
    return {
        "schema_version": 1,
        "user_email": OWNER,
        "analysis": {
            "ai_enabled": False,
        },
        "retry": {
            "max_attempts": 3,
            "base_delay_seconds": 0,
            "max_delay_seconds": 0,
            "jitter_seconds": 0,
        },
        "batch": {
            "batch_size": 2,
            "max_concurrent_batches": 2,
            "item_retry": {
                "max_attempts": 1,
                "base_delay_seconds": 0,
                "jitter_seconds": 0,
            },
        },
    }


@pytest.fixture
def sample_config(sample_config_dict: dict[str, Any]) -> AppConfig:
    """Return a valid AppConfig instance for fast tests."""
    return AppConfig(**sample_config_dict)


@pytest.fixture
def sample_config_yaml() -> str:
    """Return a minimal valid config.yaml content."""
    return """
schema_version: 1
user_email: "me@example.com"

analysis:
  days_back: 14
  selected_accounts: ["Me@Example.com"]
  priority_thresholds:
    high: 5
    medium: 2

cache:
  max_entries: 500
  eviction_policy: "lfu"
"""


@pytest.fixture
def temp_config_dir(tmp_path: Path) -> Path:
    """Create a temporary config directory."""
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    return config_dir


@pytest.fixture
def config_file(temp_config_dir: Path, sample_config_yaml: str) -> Path:
    """Create a temporary config file with valid content."""
    config_path = temp_config_dir / "config.yaml"
    config_path.write_text(sample_config_yaml)
    return config_path


@pytest.fixture
def set_config_env(config_file: Path) -> Generator[None, None, None]:
    """Set the FOLLOWUP_CONFIG_PATH environment variable."""
    old_value = os.environ.get("FOLLOWUP_CONFIG_PATH")
    os.environ["FOLLOWUP_CONFIG_PATH"] = str(config_file)
    yield
    if old_value is None:
        del os.environ["FOLLOWUP_CONFIG_PATH"]
    else:
        os.environ["FOLLOWUP_CONFIG_PATH"] = old_value
