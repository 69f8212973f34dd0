"""Tests for command definitions and argv building."""

import pytest

from neodeck.commands import (
    CommandExecution,
    CommandParam,
    CommandSpec,
    ExecutionMode,
    ParamType,
    validate_execution,
)
from neodeck.core.exceptions import CommandValidationError

UP = CommandSpec(
    name="up",
    description="Deploy stack",
    base_args=("up",),
    params=(
        CommandParam("stack", short="-s", long="--stack", param_type=ParamType.STACK),
        CommandParam("yes", long="--yes", param_type=ParamType.FLAG, default="true"),
        CommandParam("cwd", long="--cwd", param_type=ParamType.FILE_PATH),
        CommandParam("message", short="-m"),
    ),
)

CONFIG_SET = CommandSpec(
    name="config set",
    description="Set a config value",
    base_args=("config", "set"),
    params=(
        CommandParam("key", required=True),
        CommandParam("value"),
        CommandParam("secret", long="--secret", param_type=ParamType.FLAG),
    ),
)


def test_defaults_are_applied():
    execution = CommandExecution.with_defaults(UP, cwd="/work")
    assert execution.param_values == {"yes": "true"}
    assert execution.cwd == "/work"
    assert execution.build_args() == ["up", "--yes"]


def test_build_args_orders_by_declaration():
    execution = CommandExecution(
        UP, {"message": "ship it", "stack": "dev", "yes": "yes", "cwd": "/elsewhere"}
    )
    # The working directory never becomes a flag.
    assert execution.build_args() == ["up", "--stack", "dev", "--yes", "-m", "ship it"]
    assert execution.display() == "pulumi up --stack dev --yes -m ship it"


@pytest.mark.parametrize("value", ["false", "no", "", "1"])
def test_flags_need_an_explicit_truthy_value(value):
    assert CommandExecution(UP, {"yes": value}).build_args() == ["up"]


def test_positional_params():
    execution = CommandExecution(CONFIG_SET, {"key": "aws:region", "value": "us-west-2", "secret": "TRUE"})
    assert execution.build_args() == ["config", "set", "aws:region", "us-west-2", "--secret"]
    assert execution.display("pulumi-dev").startswith("pulumi-dev config set")


def test_validate_accepts_complete_execution():
    validate_execution(CommandExecution(CONFIG_SET, {"key": "k"}))


def test_validate_rejects_missing_required_param():
    with pytest.raises(CommandValidationError, match="Required parameter 'key' is missing"):
        validate_execution(CommandExecution(CONFIG_SET, {"value": "v"}))


def test_validate_rejects_interactive_commands():
    login = CommandSpec("login", "Log in", base_args=("login",), execution_mode=ExecutionMode.INTERACTIVE)
    with pytest.raises(CommandValidationError, match="requires interactive mode"):
        validate_execution(CommandExecution(login))
