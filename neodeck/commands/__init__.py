"""
Command definitions run through the process executor.
"""

from .types import (
    CommandExecution,
    CommandParam,
    CommandSpec,
    ExecutionMode,
    ParamType,
    validate_execution,
)

__all__ = [
    "CommandExecution",
    "CommandParam",
    "CommandSpec",
    "ExecutionMode",
    "ParamType",
    "validate_execution",
]
