"""Deployment settings for chat-loop.

Values come from keyword arguments first, then environment variables, then
the defaults below. Most variables carry the ``CHAT_LOOP_`` prefix; the
OpenAI ones keep the names the OpenAI tooling already uses.
"""

from pathlib import Path
from typing import Optional

import pydantic_settings
from pydantic import AliasChoices, Field

DEFAULT_FILE_THRESHOLD = 10 * 1024 * 1024
DEFAULT_OUTPUT_TTL = 60 * 60
DEFAULT_MAX_RESULT_SIZE = 50_000


class Settings(pydantic_settings.BaseSettings):
    model_config = pydantic_settings.SettingsConfigDict(
        env_prefix="CHAT_LOOP_", env_ignore_empty=True
    )

    openai_api_key: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("openai_api_key", "OPENAI_API_KEY")
    )
    openai_base_url: str = Field(
        default="https://api.openai.com/v1",
        validation_alias=AliasChoices("openai_base_url", "OPENAI_BASE_URL"),
    )
    openai_model: str = Field(
        default="gpt-5-mini", validation_alias=AliasChoices("openai_model", "OPENAI_MODEL")
    )

    data_dir: Path = Path("data")
    output_dir: Optional[Path] = None
    output_file_threshold: int = Field(default=DEFAULT_FILE_THRESHOLD, gt=0)
    output_ttl: float = Field(default=DEFAULT_OUTPUT_TTL, gt=0)
    max_result_size: int = Field(default=DEFAULT_MAX_RESULT_SIZE, gt=0)

    search_url: Optional[str] = None

    @classmethod
    def from_env(cls, **overrides) -> "Settings":
        """Load from the environment; ``None`` overrides are ignored."""
        return cls(**{k: v for k, v in overrides.items() if v is not None})

    @property
    def output_storage_dir(self) -> Path:
        return self.output_dir or self.data_dir / "output" / "storage"

    def conversation_files_dir(self, project_id: str, conversation_id: str) -> Path:
        return self.data_dir / "projects" / project_id / "files" / conversation_id
