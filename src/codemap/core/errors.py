"""Error taxonomy for codemap generation.

Only fatal classes are exceptions. Tool execution failures are turned into
tool-result text by the loop, and per-unit failures travel as ``Err`` values
(see :mod:`codemap.core.result`).

Every error raised after the stage context checkpoint was captured carries
it on ``checkpoint`` so the caller can continue from there instead of
restarting research.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from codemap.core.contracts.checkpoint import StageContext
    from codemap.core.contracts.codemap import Codemap


class CodemapError(RuntimeError):
    """Base class for fatal codemap generation errors."""

    def __init__(self, message: str, *, checkpoint: StageContext | None = None) -> None:
        super().__init__(message)
        self.checkpoint = checkpoint


class GenerationCancelled(CodemapError):
    """The shared cancellation signal was set. Not retried, not a failure."""

    def __init__(
        self, message: str = "Generation cancelled", *, checkpoint: StageContext | None = None
    ) -> None:
        super().__init__(message, checkpoint=checkpoint)


class OutputBudgetExceeded(CodemapError):
    """A loop exceeded its cumulative output ceiling; resumable from a checkpoint."""

    def __init__(
        self, label: str, limit: int, *, checkpoint: StageContext | None = None
    ) -> None:
        super().__init__(f"Output budget reached ({limit} chars) in {label}", checkpoint=checkpoint)
        self.label = label
        self.limit = limit


class ResearchToolUseError(CodemapError):
    """Research finished without ever inspecting the codebase through a tool."""


class DiagramSynthesisError(CodemapError):
    """The global diagram could not be produced and one is mandatory.

    ``partial`` holds the aggregated codemap without its global diagram so
    the caller can keep the trace work and retry only the diagram.
    """

    def __init__(
        self,
        message: str,
        *,
        checkpoint: StageContext | None = None,
        partial: Codemap | None = None,
    ) -> None:
        super().__init__(message, checkpoint=checkpoint)
        self.partial = partial


class ConfigurationError(CodemapError):
    """The engine is missing configuration it cannot run without."""


__all__ = [
    "CodemapError",
    "ConfigurationError",
    "DiagramSynthesisError",
    "GenerationCancelled",
    "OutputBudgetExceeded",
    "ResearchToolUseError",
]
