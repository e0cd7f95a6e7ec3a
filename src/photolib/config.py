"""Configuration loading and provider API keys."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path

import keyring

from photolib.constants import DEFAULT_LIBRARY_FILE, DEFAULT_POOL_SIZE
from photolib.exceptions import InvalidError
from photolib.models import AIProvider, TaskKind
from photolib.tasks.policy import RetryPolicy

logger = logging.getLogger(__name__)

SERVICE_PREFIX = "photolib"
KEY_NAME = "api_key"
DEFAULT_CONFIG_FILE = Path("config/photolib.json")


def keyring_service(provider: AIProvider | str) -> str:
    """Keyring service name for *provider*, e.g. ``photolib-openAI``."""
    return f"{SERVICE_PREFIX}-{AIProvider(provider).value}"


def _env_var(provider: AIProvider | str) -> str:
    return f"PHOTOLIB_{AIProvider(provider).name}_API_KEY"


def get_provider_api_key(provider: AIProvider | str) -> str:
    """Get an AI provider's API key: system keyring first, then env var.

    Raises:
        RuntimeError: If no key is found anywhere, with setup instructions.
    """
    provider = AIProvider(provider)
    api_key = keyring.get_password(keyring_service(provider), KEY_NAME)
    if api_key:
        return api_key

    api_key = os.environ.get(_env_var(provider))
    if api_key:
        return api_key

    raise RuntimeError(
        f"{provider.display_name} API key not found.\n"
        f"Set it with: photolib config set-api-key {provider.value} YOUR_KEY\n"
        f"Or: export {_env_var(provider)}=your-key"
    )


def set_provider_api_key(provider: AIProvider | str, api_key: str) -> None:
    keyring.set_password(keyring_service(provider), KEY_NAME, api_key)


@dataclass
class LibraryConfig:
    """Engine settings with defaults; every field can come from JSON."""

    library_file: Path = field(default_factory=lambda: Path(DEFAULT_LIBRARY_FILE))
    pool_size: int = DEFAULT_POOL_SIZE
    local_only_mode: bool = False
    ai_provider: AIProvider = AIProvider.OPENAI
    faces_enabled: bool = False
    log_level: str = "INFO"
    # keyed by task kind value
    task_timeouts: dict[str, float] = field(default_factory=dict)
    retry_limits: dict[str, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if isinstance(self.library_file, str):
            self.library_file = Path(self.library_file)
        try:
            self.ai_provider = AIProvider(self.ai_provider)
        except ValueError:
            raise InvalidError(f"Unknown AI provider: {self.ai_provider!r}") from None
        if self.pool_size < 1:
            raise InvalidError(f"pool_size must be at least 1, got {self.pool_size}")
        for kind in (*self.task_timeouts, *self.retry_limits):
            try:
                TaskKind(kind)
            except ValueError:
                raise InvalidError(f"Unknown task kind in config: {kind!r}") from None

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy.from_overrides(
            retry_limits=self.retry_limits, timeouts=self.task_timeouts
        )


def load_config(config_path: Path | None = None) -> LibraryConfig:
    """Load configuration from JSON, merging over defaults.

    Reads ``config/photolib.json`` when *config_path* is None. A missing
    file yields the defaults; unknown keys are ignored.
    """
    if config_path is None:
        config_path = DEFAULT_CONFIG_FILE

    data: dict = {}
    if config_path.exists():
        with open(config_path) as f:
            data = json.load(f)
    else:
        logger.debug("No config file at %s, using defaults", config_path)

    field_names = {f.name for f in fields(LibraryConfig)}
    ignored = sorted(set(data) - field_names)
    if ignored:
        logger.warning("Ignoring unknown config keys: %s", ", ".join(ignored))
    return LibraryConfig(**{k: v for k, v in data.items() if k in field_names})
