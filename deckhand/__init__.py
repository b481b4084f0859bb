"""Deckhand - step-loop task engine for language-model agents."""

__version__ = "0.1.0"

from deckhand.config import Config
from deckhand.engine import Engine, Invocation, RunResult, StepState
from deckhand.gateway import ApprovalDecision, ApprovalMode, ApprovalPolicy

__all__ = [
    "ApprovalDecision",
    "ApprovalMode",
    "ApprovalPolicy",
    "Config",
    "Engine",
    "Invocation",
    "RunResult",
    "StepState",
    "__version__",
]
