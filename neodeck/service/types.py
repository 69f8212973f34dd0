"""
Task service data types.

Responses are normalised defensively: missing or null array fields become
empty lists and unknown event types are skipped instead of failing a poll.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

TOOL_RESULT_PREVIEW_CHARS = 200
TASK_NAME_PREVIEW_CHARS = 50


class TaskStatus(str, Enum):
    """Known task states. The service may report others; those stay plain strings."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    IDLE = "idle"


# Statuses meaning the agent is still working on a response.
BUSY_STATUSES = frozenset({"running", "in_progress", "pending"})


def normalize_status(raw: Any) -> str | None:
    if raw is None:
        return None
    text = str(raw).strip().lower()
    return text or None


class MessageType(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    TOOL_CALL = "tool_call"
    TOOL_RESPONSE = "tool_response"
    APPROVAL_REQUEST = "approval_request"
    NAME_CHANGE = "name_change"


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    args: Any = None


@dataclass(frozen=True)
class Message:
    """One entry in a task transcript."""

    type: MessageType
    content: str
    timestamp: str | None = None
    tool_calls: tuple[ToolCall, ...] = ()
    tool_name: str | None = None

    @property
    def key(self) -> tuple[MessageType, str]:
        """Identity used when comparing local and remote transcripts."""
        return (self.type, self.content)

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(type=MessageType.USER, content=content, timestamp=utc_now_iso())


@dataclass
class Task:
    id: str
    name: str | None = None
    status: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    url: str | None = None
    messages: list[Message] = field(default_factory=list)

    @property
    def is_busy(self) -> bool:
        return self.status in BUSY_STATUSES

    @property
    def display_name(self) -> str:
        return self.name or self.id


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def preview_name(text: str, limit: int = TASK_NAME_PREVIEW_CHARS) -> str:
    """Short task name derived from the first user message."""
    text = text.strip()
    if not text:
        return "New task"
    if len(text) > limit:
        return f"{text[:limit]}..."
    return text


def _as_list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def _content_to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value)


def parse_task(payload: Any) -> Task | None:
    """Build a Task from a service payload, or None when it has no id."""
    if not isinstance(payload, dict):
        return None
    task_id = payload.get("id") or payload.get("taskId")
    if not task_id:
        return None
    return Task(
        id=str(task_id),
        name=payload.get("name"),
        status=normalize_status(payload.get("status")),
        created_at=payload.get("createdAt"),
        updated_at=payload.get("updatedAt"),
        url=payload.get("url"),
    )


def parse_tasks(items: Any) -> list[Task]:
    tasks = []
    for item in _as_list(items):
        task = parse_task(item)
        if task is not None:
            tasks.append(task)
    return tasks


def _tool_result_preview(content: str) -> str:
    try:
        data = json.loads(content)
    except (ValueError, TypeError):
        return content
    if isinstance(data, dict) and "result" in data:
        result = json.dumps(data["result"])
        if len(result) > TOOL_RESULT_PREVIEW_CHARS:
            return f"{result[:TOOL_RESULT_PREVIEW_CHARS]}..."
        return result
    return content


def parse_event(event: Any) -> Message | None:
    """Convert one raw task event into a Message (None for unknown kinds)."""
    if not isinstance(event, dict):
        return None
    body = event.get("eventBody")
    if not isinstance(body, dict):
        return None

    body_type = body.get("type") or ""
    content = _content_to_text(body.get("content"))
    timestamp = body.get("timestamp")
    name = body.get("name")

    if body_type == "user_message":
        return Message(MessageType.USER, content, timestamp)
    if body_type == "assistant_message":
        calls = tuple(
            ToolCall(id=str(tc.get("id") or ""), name=str(tc.get("name") or ""), args=tc.get("args"))
            for tc in _as_list(body.get("toolCalls"))
            if isinstance(tc, dict)
        )
        return Message(MessageType.ASSISTANT, content, timestamp, tool_calls=calls)
    if body_type == "exec_tool_call":
        return Message(
            MessageType.TOOL_CALL,
            f"Executing: {name or 'unknown'}",
            timestamp,
            tool_name=name,
        )
    if body_type == "tool_response":
        return Message(
            MessageType.TOOL_RESPONSE,
            _tool_result_preview(content),
            timestamp,
            tool_name=name,
        )
    if body_type == "user_approval_request":
        return Message(
            MessageType.APPROVAL_REQUEST,
            body.get("message") or "Approval requested",
            timestamp,
        )
    if body_type == "set_task_name":
        return Message(MessageType.NAME_CHANGE, f"Task: {name or ''}", timestamp)
    return None


def parse_events(items: Any) -> list[Message]:
    messages = []
    for item in _as_list(items):
        message = parse_event(item)
        if message is not None:
            messages.append(message)
    return messages


def user_message_payload(content: str) -> dict[str, str]:
    return {"type": "user_message", "content": content, "timestamp": utc_now_iso()}


def merge_transcript(local: list[Message], remote: list[Message]) -> tuple[list[Message], int]:
    """
    Merge a freshly fetched remote transcript into the local one.

    Returns the transcript to keep and how many remote messages were not
    already known locally. The remote list replaces the local one only when
    it carries something new, so an optimistic local echo survives until the
    service reports it.
    """
    if not remote:
        return local, 0

    known: dict[tuple[MessageType, str], int] = {}
    for message in local:
        known[message.key] = known.get(message.key, 0) + 1

    new_count = 0
    for message in remote:
        if known.get(message.key, 0) > 0:
            known[message.key] -= 1
        else:
            new_count += 1

    if new_count == 0:
        return local, 0
    return list(remote), new_count


def assistant_replied_since(messages: list[Message], user_turns: int) -> bool:
    """
    True when a non-empty assistant message follows the ``user_turns``-th
    user message in ``messages``.
    """
    if user_turns <= 0:
        return any(m.type == MessageType.ASSISTANT and m.content for m in messages)

    seen_users = 0
    for message in messages:
        if message.type == MessageType.USER:
            seen_users += 1
        elif (
            seen_users >= user_turns
            and message.type == MessageType.ASSISTANT
            and message.content
        ):
            return True
    return False


def count_user_turns(messages: list[Message]) -> int:
    return sum(1 for m in messages if m.type == MessageType.USER)
