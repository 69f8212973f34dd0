"""
Task service client and data types.
"""

from .client import TaskServiceClient
from .retry import RetryController
from .types import (
    BUSY_STATUSES,
    Message,
    MessageType,
    Task,
    TaskStatus,
    ToolCall,
)

__all__ = [
    "BUSY_STATUSES",
    "Message",
    "MessageType",
    "RetryController",
    "Task",
    "TaskServiceClient",
    "TaskStatus",
    "ToolCall",
]
