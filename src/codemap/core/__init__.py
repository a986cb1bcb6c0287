"""Core package for the codemap engine.

Holds settings, the explicit ``Result`` type, the error taxonomy, the data
contracts and the untrusted-output extraction helpers:
    from codemap.core.settings import Settings, PipelineConfig, get_logger
"""

from __future__ import annotations

__all__ = ["__doc__"]
