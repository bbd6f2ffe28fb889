"""Self-healing for failed plan steps.

Core components:
- HealingEngine: heals failed steps under a per-step attempt ceiling
- analyze_error / classify_error: local, deterministic failure classification
- apply_strategy: one handler per strategy type producing a healed step copy

Diagnostic collaborator:
- DiagnosticAdvisor: protocol for external strategy synthesis
- LLMDiagnosticAdvisor: LangChain chat model behind a jinja2 prompt
"""

from .advisor import DiagnosticAdvisor, DiagnosticRequest, LLMDiagnosticAdvisor, fallback_strategy, parse_strategy
from .analysis import analyze_error, classify_error, suggest_strategies
from .engine import HealingEngine
from .strategies import apply_strategy, healing_root_id
from .types import (
    ErrorAnalysis,
    ErrorSeverity,
    ErrorType,
    HealingResult,
    HealingStrategy,
    HealingStrategyType,
)
