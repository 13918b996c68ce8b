"""Custom exceptions for the port-hopping CLI.

All exceptions provide:
- Clear error messages
- Optional hints for resolution
- Optional details for debugging
- Exit codes for proper shell integration
"""

from typing import Optional


class HopError(Exception):
    """Base exception for all hop errors.

    Attributes:
        message: Human-readable error description
        hint: Suggested action to resolve the error
        details: Additional context for debugging
        exit_code: Shell exit code (1-127)
    """

    exit_code: int = 1

    def __init__(
        self,
        message: str,
        *,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.hint = hint
        self.details = details or []

    def __str__(self) -> str:
        return self.message


class ConfigurationError(HopError):
    """Configuration file or settings errors.

    Raised when:
    - Config file unreadable
    - Invalid YAML syntax
    - Invalid configuration values
    """
    exit_code = 2


class ValidationError(HopError):
    """Input validation errors.

    Raised when:
    - Port out of range
    - Port range start after end
    - Unknown address family or protocol
    """
    exit_code = 3


class ExecutionError(HopError):
    """Command execution failures.

    Raised when:
    - Shell command returns non-zero exit code
    - Command times out
    - Command binary cannot be started
    """
    exit_code = 5

    def __init__(
        self,
        message: str,
        *,
        command: Optional[str] = None,
        return_code: Optional[int] = None,
        stderr: Optional[str] = None,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        if not details:
            details = []
        if return_code is not None:
            details.append(f"Exit code: {return_code}")
        if stderr:
            details.append(f"Error output: {stderr}")
        super().__init__(message, hint=hint, details=details)
        self.command = command
        self.return_code = return_code
        self.stderr = stderr


class PrerequisiteError(HopError):
    """Missing prerequisites.

    Raised when:
    - Required command not found
    - Insufficient permissions
    - Unsupported package manager
    """
    exit_code = 6


class FirewallError(HopError):
    """Firewall/iptables errors.

    Raised when:
    - iptables command fails
    - Delete loop does not converge
    """
    exit_code = 15

    def __init__(
        self,
        message: str,
        *,
        rule: Optional[str] = None,
        chain: Optional[str] = None,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        super().__init__(message, hint=hint, details=details)
        self.rule = rule
        self.chain = chain


class ControllerUnavailableError(FirewallError):
    """The packet-filter binary for an address family is not installed."""

    def __init__(self, binary: str, *, family: Optional[str] = None) -> None:
        super().__init__(
            f"{binary} not found",
            hint="Install it with: hop install-deps",
        )
        self.binary = binary
        self.family = family


class RedirectCommandError(FirewallError):
    """An insert/check/delete command failed despite the controller being usable."""

    def __init__(
        self,
        message: str,
        *,
        command: Optional[str] = None,
        return_code: Optional[int] = None,
        stderr: Optional[str] = None,
        family: Optional[str] = None,
        rule: Optional[str] = None,
        hint: Optional[str] = None,
    ) -> None:
        details = []
        if command:
            details.append(f"Command: {command}")
        if return_code is not None:
            details.append(f"Exit code: {return_code}")
        if stderr:
            details.append(f"Error output: {stderr.strip()}")
        super().__init__(
            message,
            rule=rule,
            chain="PREROUTING",
            hint=hint,
            details=details,
        )
        self.command = command
        self.return_code = return_code
        self.stderr = stderr
        self.family = family


class PersistenceError(HopError):
    """Saving firewall rules for reboot failed.

    Never unwinds an already applied rule change; callers downgrade it
    to a warning.
    """
    exit_code = 16

    def __init__(
        self,
        message: str,
        *,
        method: Optional[str] = None,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        super().__init__(message, hint=hint, details=details)
        self.method = method
