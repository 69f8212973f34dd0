"""
Command definitions for the process executor.

A ``CommandSpec`` is static data describing one CLI command; a
``CommandExecution`` binds parameter values to it and turns them into an
argv for the executor.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from ..core.exceptions import CommandValidationError

# Parameter handled through the working directory, never passed as a flag.
CWD_PARAM = "cwd"

_TRUTHY = ("true", "yes")


class ParamType(str, Enum):
    TEXT = "text"
    FLAG = "flag"
    STACK = "stack"
    FILE_PATH = "file_path"
    SECRET = "secret"


class ExecutionMode(str, Enum):
    STREAMING = "streaming"
    QUICK = "quick"
    # Needs a real terminal for prompts; not runnable from the client.
    INTERACTIVE = "interactive"


@dataclass(frozen=True)
class CommandParam:
    name: str
    description: str = ""
    short: str | None = None
    long: str | None = None
    required: bool = False
    default: str | None = None
    param_type: ParamType = ParamType.TEXT

    @property
    def positional(self) -> bool:
        return self.short is None and self.long is None


@dataclass(frozen=True)
class CommandSpec:
    name: str
    description: str
    base_args: tuple[str, ...] = ()
    params: tuple[CommandParam, ...] = ()
    execution_mode: ExecutionMode = ExecutionMode.STREAMING


@dataclass
class CommandExecution:
    spec: CommandSpec
    param_values: dict[str, str] = field(default_factory=dict)
    cwd: str | None = None

    @classmethod
    def with_defaults(cls, spec: CommandSpec, cwd: str | None = None) -> "CommandExecution":
        values = {p.name: p.default for p in spec.params if p.default is not None}
        return cls(spec=spec, param_values=values, cwd=cwd)

    def build_args(self) -> list[str]:
        args = list(self.spec.base_args)
        for param in self.spec.params:
            if param.name == CWD_PARAM:
                continue
            value = self.param_values.get(param.name)
            if not value:
                continue

            if param.param_type is ParamType.FLAG:
                if value.lower() in _TRUTHY:
                    args.append(param.long or param.short)
            elif param.positional:
                args.append(value)
            else:
                args.extend([param.long or param.short, value])
        return args

    def display(self, program: str = "pulumi") -> str:
        return " ".join([program, *self.build_args()])


def validate_execution(execution: CommandExecution) -> None:
    """Raise CommandValidationError when ``execution`` cannot be run here."""
    spec = execution.spec
    if spec.execution_mode is ExecutionMode.INTERACTIVE:
        raise CommandValidationError(
            f"Command '{spec.name}' requires interactive mode and cannot be run here. "
            "Please run it directly in your terminal."
        )
    for param in spec.params:
        if param.required and not execution.param_values.get(param.name):
            raise CommandValidationError(f"Required parameter '{param.name}' is missing")
