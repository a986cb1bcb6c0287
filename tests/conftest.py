"""Test-suite wide environment: no real keys, quiet logs, fresh settings."""

from __future__ import annotations

from collections.abc import Iterator

import pytest

from codemap.core.settings import load_settings
from codemap.diagram import validate


@pytest.fixture(autouse=True)  # type: ignore[misc]
def _isolated_settings(
    monkeypatch: pytest.MonkeyPatch, tmp_path_factory: pytest.TempPathFactory
) -> Iterator[None]:
    monkeypatch.setenv("CODEMAP_ENV", "test")
    monkeypatch.setenv("LOG_LEVEL", "WARNING")
    monkeypatch.setenv("CODEMAP_RUNS_DIR", str(tmp_path_factory.mktemp("runs")))
    monkeypatch.delenv("CODEMAP_PROMPTS_DIR", raising=False)
    monkeypatch.delenv("CODEMAP_MODE", raising=False)
    monkeypatch.delenv("CODEMAP_DETAIL_LEVEL", raising=False)
    monkeypatch.delenv("CODEMAP_REQUIRE_GLOBAL_DIAGRAM", raising=False)
    monkeypatch.delenv("CODEMAP_DIAGRAM_MAX_ATTEMPTS", raising=False)
    monkeypatch.delenv("CODEMAP_MAX_OUTPUT_CHARS", raising=False)
    # Same parser whether or not mermaid-cli is installed on the machine.
    monkeypatch.setattr(validate, "default_parser", validate.MermaidSyntaxParser)
    load_settings.cache_clear()
    yield
    load_settings.cache_clear()
