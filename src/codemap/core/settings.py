"""Centralized configuration using Pydantic Settings (v2).

Two layers live here:

- :class:`Settings` reads the process environment and ``.env`` files once
  (cached by :func:`load_settings`).
- :class:`PipelineConfig` is the explicit, immutable configuration object the
  pipeline driver is constructed with. A different configuration means a new
  driver; nothing global is mutated.
"""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

EnvName = Literal["dev", "test", "prod"]
LogLevelName = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
Mode = Literal["fast", "smart"]
DetailLevel = Literal["overview", "low", "medium", "high", "ultra"]


class Settings(BaseSettings):
    """Typed application configuration loaded from env and `.env` files.

    Attributes
    ----------
    environment : EnvName
        Runtime environment flag; maps from `CODEMAP_ENV`.
    log_level : LogLevelName
        Global log level string; maps from `LOG_LEVEL`.
    openai_api_key : Optional[str]
        Key for the OpenAI-compatible model backend. Maps from `OPENAI_API_KEY`.
    model : str
        Provider model id used for every stage. Maps from `CODEMAP_MODEL`.
    """

    environment: EnvName = Field(default="dev", alias="CODEMAP_ENV")
    log_level: LogLevelName = Field(default="INFO", alias="LOG_LEVEL")
    openai_api_key: str | None = Field(default=None, alias="OPENAI_API_KEY")
    openai_base_url: str = Field(default="https://api.openai.com/v1", alias="OPENAI_BASE_URL")
    model: str = Field(default="gpt-4o", alias="CODEMAP_MODEL")
    language: str = Field(default="English", alias="CODEMAP_LANGUAGE")
    mode: Mode = Field(default="smart", alias="CODEMAP_MODE")
    detail_level: DetailLevel = Field(default="overview", alias="CODEMAP_DETAIL_LEVEL")
    prompts_dir: str | None = Field(default=None, alias="CODEMAP_PROMPTS_DIR")
    runs_dir: str = Field(default="artifacts/codemaps", alias="CODEMAP_RUNS_DIR")
    max_output_chars: int = Field(default=400_000, alias="CODEMAP_MAX_OUTPUT_CHARS", gt=0)
    diagram_max_attempts: int = Field(default=8, alias="CODEMAP_DIAGRAM_MAX_ATTEMPTS", ge=1)
    require_global_diagram: bool = Field(default=True, alias="CODEMAP_REQUIRE_GLOBAL_DIAGRAM")

    model_config = SettingsConfigDict(
        env_file=(".env", ".env.local", ".env.dev", ".env.test", ".env.prod"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def is_dev(self) -> bool:
        """Return True if running in the development environment."""
        return self.environment == "dev"

    @property
    def is_test(self) -> bool:
        """Return True if running in the test environment."""
        return self.environment == "test"

    def log_level_numeric(self) -> int:
        """Return the numeric logging level corresponding to `self.log_level`."""
        return getattr(logging, self.log_level, logging.INFO)


@lru_cache(maxsize=1)
def load_settings() -> Settings:
    """Create and cache a `Settings` instance.

    Tests force a rebuild via `load_settings.cache_clear()` after mutating
    `os.environ`.
    """
    os.environ.setdefault("CODEMAP_ENV", "dev")
    return Settings()


class PipelineConfig(BaseModel):
    """Immutable knobs for one pipeline driver.

    Parameters
    ----------
    mode:
        ``"fast"`` appends the parallel-tool addon to the system prompt and
        raises the research tool concurrency; ``"smart"`` does neither.
    detail_level:
        How exhaustive the structure stage is asked to be.
    research_max_rounds:
        Round ceiling for the research loop.
    stage_max_rounds:
        Round ceiling for per-trace stage loops.
    max_output_chars:
        Hard ceiling on cumulative streamed text per loop invocation.
    fast_parallel_tools / smart_parallel_tools / trace_parallel_tools:
        Tool concurrency ceilings.
    diagram_max_attempts:
        Generate/fix attempts for the global diagram.
    require_global_diagram:
        Whether a diagram synthesis failure fails the whole pipeline.
    """

    model_config = ConfigDict(frozen=True)

    mode: Mode = "smart"
    detail_level: DetailLevel = "overview"
    language: str = "English"
    research_max_rounds: int = Field(default=12, ge=1)
    stage_max_rounds: int = Field(default=8, ge=1)
    max_output_chars: int = Field(default=400_000, gt=0)
    fast_parallel_tools: int = Field(default=6, ge=1)
    smart_parallel_tools: int = Field(default=4, ge=1)
    trace_parallel_tools: int = Field(default=4, ge=1)
    diagram_max_attempts: int = Field(default=8, ge=1)
    require_global_diagram: bool = True

    @property
    def research_parallel_tools(self) -> int:
        """Tool concurrency for research/structure, higher in fast mode."""
        return self.fast_parallel_tools if self.mode == "fast" else self.smart_parallel_tools

    @classmethod
    def from_settings(cls, s: Settings, **overrides: object) -> PipelineConfig:
        """Build a config from loaded settings; keyword overrides win."""
        values: dict[str, object] = {
            "mode": s.mode,
            "detail_level": s.detail_level,
            "language": s.language,
            "max_output_chars": s.max_output_chars,
            "diagram_max_attempts": s.diagram_max_attempts,
            "require_global_diagram": s.require_global_diagram,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls.model_validate(values)


def get_logger(name: str = "codemap") -> logging.Logger:
    """Return a process-global logger configured to the settings log level."""
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s")
        )
        logger.addHandler(handler)
    logger.setLevel(load_settings().log_level_numeric())
    logger.propagate = False
    return logger


__all__ = [
    "DetailLevel",
    "Mode",
    "PipelineConfig",
    "Settings",
    "get_logger",
    "load_settings",
]
