"""
Agent-side support: personas, logging, metrics, validation and error context.
"""

from .error_context import ErrorContext, create_step_error_context, format_error_summary
from .logging_config import configure_logging, get_logger
from .metrics import AgentMetrics, MetricsCollector, StepMetrics
from .profiles import DEFAULT_AGENT_ID, AgentDirectory, AgentProfile
from .validation import ValidationResult, validate_decomposition, validate_task_text

__all__ = [
    "AgentDirectory",
    "AgentMetrics",
    "AgentProfile",
    "DEFAULT_AGENT_ID",
    "ErrorContext",
    "MetricsCollector",
    "StepMetrics",
    "ValidationResult",
    "configure_logging",
    "create_step_error_context",
    "format_error_summary",
    "get_logger",
    "validate_decomposition",
    "validate_task_text",
]
