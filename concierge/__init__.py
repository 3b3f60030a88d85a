"""Concierge - layered query resolution with circuit breakers, caching and human escalation."""

from .config import Config, cfg
from .models import ConversationContext, ResolutionMethod, ResolutionResult
from .orchestrator import CascadeOrchestrator
from .runtime import Runtime

__all__ = [
    "Config",
    "cfg",
    "ConversationContext",
    "ResolutionMethod",
    "ResolutionResult",
    "CascadeOrchestrator",
    "Runtime",
]

__version__ = "0.1.0"
