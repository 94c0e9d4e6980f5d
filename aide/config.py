# aide/config.py
"""
Configuration for the aide agent.

All configuration flows through this module. Values are loaded from environment
variables (via .env file) and validated with Pydantic. Every subsystem gets its
own settings class; ``AideConfig`` composes them into the single object that
the session hands out.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Annotated, Optional

import structlog
from pydantic import BeforeValidator, Field, model_validator
from pydantic_settings import BaseSettings, NoDecode

logger = structlog.get_logger(__name__)

# Resolve .env relative to the project root (one level above aide/ package),
# so the config works regardless of the user's current working directory.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_ENV_FILE = _PROJECT_ROOT / ".env"

DEFAULT_PERPETUAL_GRANT_PHRASE = "I grant perpetual permission to execute this function."


def _coerce_str_list(value: object) -> list[str]:
    """Coerce env-var values into a list of stripped, non-empty strings.

    Accepts:
      - A single str         → ["value"]
      - Comma-separated str  → ["a", "b"]
      - JSON array str       → ["a", "b"]
      - An existing list/set → passthrough with str coercion
    """
    if isinstance(value, (list, tuple, set, frozenset)):
        return [str(item).strip() for item in value if str(item).strip()]
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return []
        if stripped.startswith("["):
            return _coerce_str_list(json.loads(stripped))
        if "," in stripped:
            return [part.strip() for part in stripped.split(",") if part.strip()]
        return [stripped]
    return value  # type: ignore[return-value]


# Annotated type for list[str] fields that accept bare values, comma-separated,
# and JSON arrays from environment variables.
StrList = Annotated[list[str], NoDecode, BeforeValidator(_coerce_str_list)]


class ModelConfig(BaseSettings):
    """Configuration for the Claude completion service."""

    api_key: Optional[str] = Field(None, alias="ANTHROPIC_API_KEY")
    model: str = Field("claude-sonnet-4-5-20250929", alias="AIDE_MODEL")
    max_tokens: int = Field(4096, alias="AIDE_MAX_TOKENS")
    request_timeout_seconds: float = Field(120.0, alias="AIDE_REQUEST_TIMEOUT_SECONDS")
    retry_max_retries: int = Field(3, alias="AIDE_RETRY_MAX_RETRIES")
    retry_base_delay: float = Field(0.5, alias="AIDE_RETRY_BASE_DELAY")
    retry_max_delay: float = Field(8.0, alias="AIDE_RETRY_MAX_DELAY")
    retry_exponential_base: float = Field(2.0, alias="AIDE_RETRY_EXPONENTIAL_BASE")
    retry_jitter_range: float = Field(0.25, alias="AIDE_RETRY_JITTER_RANGE")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def normalize_runtime_limits(self) -> "ModelConfig":
        self.max_tokens = max(1, int(self.max_tokens))
        self.request_timeout_seconds = max(1.0, float(self.request_timeout_seconds))
        self.retry_max_retries = max(0, int(self.retry_max_retries))
        self.retry_base_delay = max(0.05, float(self.retry_base_delay))
        self.retry_max_delay = max(self.retry_base_delay, float(self.retry_max_delay))
        self.retry_exponential_base = max(1.0, float(self.retry_exponential_base))
        self.retry_jitter_range = max(0.0, min(1.0, float(self.retry_jitter_range)))
        return self


class EmbeddingConfig(BaseSettings):
    """Configuration for the embedding service backing the prompt cache."""

    api_key: Optional[str] = Field(None, alias="OPENAI_API_KEY")
    base_url: Optional[str] = Field(None, alias="AIDE_EMBEDDING_BASE_URL")
    model: str = Field("text-embedding-3-small", alias="AIDE_EMBEDDING_MODEL")
    dimensions: int = Field(1024, alias="AIDE_EMBEDDING_DIMENSIONS")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def normalize_dimensions(self) -> "EmbeddingConfig":
        self.dimensions = max(1, int(self.dimensions))
        return self


class CacheConfig(BaseSettings):
    """Configuration for the semantic prompt cache."""

    enabled: bool = Field(True, alias="AIDE_CACHE_ENABLED")
    distance_threshold: float = Field(0.33, alias="AIDE_CACHE_DISTANCE_THRESHOLD")
    top_k: int = Field(99, alias="AIDE_CACHE_TOP_K")
    # Trivial confirmation tokens must never be served from or written to the cache.
    uncacheable_prompts: StrList = Field(
        default_factory=lambda: ["y", "n"],
        alias="AIDE_UNCACHEABLE_PROMPTS",
        description=(
            "Prompts that bypass the cache. Matched after trimming whitespace and "
            "ignoring case, so 'Y ' is skipped just like 'y'."
        ),
    )
    generate_tags: bool = Field(False, alias="AIDE_CACHE_GENERATE_TAGS")
    collection_name: str = Field("prompts", alias="AIDE_CACHE_COLLECTION")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def normalize_limits(self) -> "CacheConfig":
        self.distance_threshold = max(0.0, min(2.0, float(self.distance_threshold)))
        self.top_k = max(1, int(self.top_k))
        return self


class ToolsConfig(BaseSettings):
    """Configuration for tool execution and the generated-tool store."""

    store_path: Optional[Path] = Field(None, alias="AIDE_TOOLS_DB")
    default_timeout: float = Field(60.0, alias="AIDE_TOOL_DEFAULT_TIMEOUT")
    max_output_length: int = Field(25000, alias="AIDE_TOOL_MAX_OUTPUT_LENGTH")
    browser_command: Optional[str] = Field(None, alias="AIDE_BROWSER_COMMAND")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def normalize_limits(self) -> "ToolsConfig":
        self.default_timeout = max(1.0, float(self.default_timeout))
        self.max_output_length = max(100, int(self.max_output_length))
        return self


class SafetyConfig(BaseSettings):
    """Configuration for the human-in-the-loop safety gate."""

    perpetual_grant_phrase: str = Field(
        DEFAULT_PERPETUAL_GRANT_PHRASE,
        alias="AIDE_PERPETUAL_GRANT_PHRASE",
    )
    affirmatives: StrList = Field(
        default_factory=lambda: ["y", "yes", "do it", "ok", "okay", "sure", "go ahead"],
        alias="AIDE_AFFIRMATIVES",
    )
    max_tool_iterations: int = Field(32, alias="AIDE_MAX_TOOL_ITERATIONS")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def normalize_limits(self) -> "SafetyConfig":
        self.perpetual_grant_phrase = self.perpetual_grant_phrase.strip()
        if not self.perpetual_grant_phrase:
            raise ValueError("AIDE_PERPETUAL_GRANT_PHRASE must not be empty.")
        self.affirmatives = [a.strip().lower() for a in self.affirmatives if a.strip()]
        self.max_tool_iterations = max(1, int(self.max_tool_iterations))
        return self


class StorageConfig(BaseSettings):
    """Where persistent state (tool store, prompt cache) lives."""

    data_dir: Path = Field(Path("./aide_data"), alias="AIDE_DATA_DIR")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}


class AideConfig:
    """
    Master configuration that composes all subsystem configs.

    Every component receives its config from here. No global state, no hidden
    settings. Everything is explicit.
    """

    def __init__(self):
        self.model = ModelConfig()
        self.embedding = EmbeddingConfig()
        self.cache = CacheConfig()
        self.tools = ToolsConfig()
        self.safety = SafetyConfig()
        self.storage = StorageConfig()

        self._resolve_paths()
        self.storage.data_dir.mkdir(parents=True, exist_ok=True)

    def _resolve_paths(self) -> None:
        """Resolve relative paths against the project root, not the CWD."""
        def _resolve(p: Path) -> Path:
            if p.is_absolute():
                return p
            return (_PROJECT_ROOT / p).resolve()

        self.storage.data_dir = _resolve(self.storage.data_dir)
        if self.tools.store_path is None:
            self.tools.store_path = self.storage.data_dir / "tools.db"
        else:
            self.tools.store_path = _resolve(self.tools.store_path)

    @property
    def tools_db_path(self) -> Path:
        assert self.tools.store_path is not None
        return self.tools.store_path

    @property
    def prompt_cache_path(self) -> Path:
        return self.storage.data_dir / "prompt_cache"

    def as_rows(self) -> list[tuple[str, str]]:
        """Flatten settings into (name, value) rows for display. Secrets are masked."""
        rows: list[tuple[str, str]] = []
        for section_name in ("model", "embedding", "cache", "tools", "safety", "storage"):
            section = getattr(self, section_name)
            for field_name in type(section).model_fields:
                value = getattr(section, field_name)
                if field_name == "api_key":
                    value = "set" if value else "unset"
                rows.append((f"{section_name}.{field_name}", str(value)))
        return rows

    def __repr__(self) -> str:
        return (
            f"AideConfig(model={self.model.model}, "
            f"embedding={self.embedding.model}, "
            f"data_dir={self.storage.data_dir})"
        )
