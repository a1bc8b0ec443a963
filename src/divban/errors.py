"""Error taxonomy shared by the provisioning core and the CLI.

Every failure surfaced to an operator is a :class:`DivbanError` carrying an
:class:`ErrorCode`. The code doubles as the process exit status (capped at
125 so it never collides with shell-reserved values).
"""
from __future__ import annotations

from enum import IntEnum


class ErrorCode(IntEnum):
    """Numeric error codes grouped by origin."""

    SUCCESS = 0
    GENERAL_ERROR = 1
    INVALID_ARGS = 2
    ROOT_REQUIRED = 3

    CONFIG_NOT_FOUND = 10
    CONFIG_PARSE_ERROR = 11
    CONFIG_VALIDATION_ERROR = 12
    CONFIG_MERGE_ERROR = 13

    USER_CREATE_FAILED = 20
    SUBUID_CONFIG_FAILED = 21
    DIRECTORY_CREATE_FAILED = 22
    LINGER_ENABLE_FAILED = 23
    UID_RANGE_EXHAUSTED = 24
    SUBUID_RANGE_EXHAUSTED = 25
    EXEC_FAILED = 26
    FILE_READ_FAILED = 27
    FILE_WRITE_FAILED = 28

    SERVICE_NOT_FOUND = 30
    SERVICE_START_FAILED = 31
    SERVICE_STOP_FAILED = 32
    SERVICE_ALREADY_RUNNING = 33
    SERVICE_NOT_RUNNING = 34


MAX_EXIT_CODE = 125


class DivbanError(RuntimeError):
    """Base class for all divban failures."""

    default_code = ErrorCode.GENERAL_ERROR

    def __init__(self, message: str, code: ErrorCode | None = None) -> None:
        super().__init__(message)
        self.code = code if code is not None else self.default_code

    @property
    def exit_code(self) -> int:
        """Return the process exit status for this error."""
        return min(int(self.code), MAX_EXIT_CODE)


class GeneralError(DivbanError):
    """Raised for invalid input and privilege problems."""


class ConfigError(GeneralError):
    """Raised when configuration parsing or validation fails."""

    default_code = ErrorCode.CONFIG_VALIDATION_ERROR


class DivbanSystemError(DivbanError):
    """Raised when an OS command, file operation or allocation fails."""

    default_code = ErrorCode.EXEC_FAILED


class UidRangeExhausted(DivbanSystemError):
    """Raised when no free UID remains in the configured range."""

    default_code = ErrorCode.UID_RANGE_EXHAUSTED


class SubuidRangeExhausted(DivbanSystemError):
    """Raised when no subordinate-ID block fits below the ceiling."""

    default_code = ErrorCode.SUBUID_RANGE_EXHAUSTED


class UidConflictError(DivbanSystemError):
    """Raised when account creation reports the chosen UID is taken."""

    default_code = ErrorCode.USER_CREATE_FAILED


class UserVerificationError(DivbanSystemError):
    """Raised when an existing account does not match the expected layout."""

    default_code = ErrorCode.USER_CREATE_FAILED


class ServiceError(DivbanError):
    """Raised when a service or its user is missing, or a unit operation fails."""

    default_code = ErrorCode.SERVICE_NOT_FOUND


__all__ = [
    "ConfigError",
    "DivbanError",
    "DivbanSystemError",
    "ErrorCode",
    "GeneralError",
    "MAX_EXIT_CODE",
    "ServiceError",
    "SubuidRangeExhausted",
    "UidConflictError",
    "UidRangeExhausted",
    "UserVerificationError",
]
