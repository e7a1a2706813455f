"""
memctx: working context reports for AI agents.

Combines semantic search over notes, scoped guidance instructions and
urgency-ranked tasks into a single text report.
"""

from .api import ContextEngine
from .errors import (
    EmbeddingUnavailable,
    InstructionStoreUnavailable,
    MemctxError,
    NotFound,
    ReportTimeout,
    ValidationError,
)
from .types import ContextLevel, TimeHorizon

__version__ = "0.1.0"

__all__ = [
    "ContextEngine",
    "ContextLevel",
    "TimeHorizon",
    "MemctxError",
    "NotFound",
    "ValidationError",
    "EmbeddingUnavailable",
    "InstructionStoreUnavailable",
    "ReportTimeout",
]
