"""Application-level exception types for Tandem."""

from __future__ import annotations


class TandemError(Exception):
    """Base exception for Tandem."""


class ConfigurationError(TandemError):
    """Base exception for configuration and startup validation errors."""


class ApiKeyNotConfiguredError(ConfigurationError):
    """Raised when an API key is required but missing."""


class DuplicateCapabilityError(ConfigurationError):
    """Raised when two capabilities are registered under the same name."""


class BackendError(TandemError):
    """Raised when the model backend call fails or returns malformed output."""


class ToolExecutionError(TandemError):
    """Raised inside the executor when a capability invocation fails."""

    def __init__(self, name: str, message: str) -> None:
        super().__init__(f"{name}: {message}")
        self.name = name
        self.message = message


class SelectionError(TandemError):
    """Raised when relevance selection cannot produce a candidate set."""


class AccountingError(TandemError):
    """Raised when token accounting fails."""


class ClassificationParseError(TandemError):
    """Raised when an invocation payload cannot be parsed for safety checks."""
