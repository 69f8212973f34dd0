"""
Custom exceptions for neodeck.

Provides specific exception types for better error handling and user feedback.
"""


class NeodeckError(Exception):
    """Base exception for neodeck errors."""


class ConfigurationError(NeodeckError):
    """Error in configuration."""


# Task Service Errors


class ServiceError(NeodeckError):
    """Base exception for task service errors."""


class NoAccessTokenError(ServiceError):
    """No access token was configured."""

    def __init__(self):
        super().__init__("No access token configured.")
        self.user_message = "Task features are disabled: no access token is configured."
        self.recovery_hint = "Set the PULUMI_ACCESS_TOKEN environment variable and restart."


class ServiceConnectionError(ServiceError):
    """The service could not be reached."""

    def __init__(self, message: str):
        super().__init__(f"Connection failed: {message}")
        self.user_message = "Could not reach the task service."
        self.recovery_hint = "Check your network connection; polling retries automatically."


class ServiceResponseError(ServiceError):
    """The service answered with a non-success status."""

    def __init__(self, status: int, message: str):
        super().__init__(f"API error: {status} - {message}")
        self.status = status
        self.message = message
        self.user_message = f"The task service returned HTTP {status}."
        self.recovery_hint = "Verify the organization name and that your token has access."

    @property
    def retryable(self) -> bool:
        return self.status == 429 or self.status >= 500


class ServiceParseError(ServiceError):
    """The service response could not be decoded."""

    def __init__(self, details: str):
        super().__init__(f"Parse error: {details}")
        self.user_message = "The task service returned an unexpected response."
        self.recovery_hint = "Run with --log-level DEBUG and inspect the log file."


# Process Errors


class ProcessError(NeodeckError):
    """Base exception for process execution errors."""


class ProcessSpawnError(ProcessError):
    """The external command could not be started."""

    def __init__(self, command: str, reason: str):
        super().__init__(f"Failed to spawn {command}: {reason}")
        self.command = command
        self.user_message = f"Could not start '{command}'."
        self.recovery_hint = "Make sure the executable is installed and on your PATH."


class CommandValidationError(ProcessError):
    """A command execution request is not runnable."""
