"""Custom exceptions for nfguard.

All exceptions provide:
- Clear error messages
- Optional hints for resolution
- Optional details for debugging
- Exit codes for proper shell integration
"""

from typing import Optional


class NFGuardError(Exception):
    """Base exception for all nfguard errors.

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


class ConfigurationError(NFGuardError):
    """Configuration file or settings errors.

    Raised when:
    - Config file unreadable
    - Invalid YAML/JSON syntax
    - System rule without chain or target
    """
    exit_code = 2


class ExecutionError(NFGuardError):
    """Command execution failures.

    Raised when:
    - iptables/ip6tables binary is missing
    - Command returns non-zero exit code (permission denied, bad syntax)
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


class PrerequisiteError(NFGuardError):
    """Missing prerequisites.

    Raised when:
    - Not running as root
    - iptables not installed
    """
    exit_code = 6


class FirewallError(NFGuardError):
    """Firewall rule errors.

    Raised when:
    - A rule could not be installed or removed
    - A chain operation fails
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


class VerificationError(NFGuardError):
    """Listing the live rule set failed.

    Never escapes the verifier: an unknown state is reported as
    "rules not loaded" so the watchdog reinstalls them.
    """
    exit_code = 16


class FatalInstallError(FirewallError):
    """A critical baseline rule could not be installed.

    Without the connection queue rule or the drop rule no packet is
    intercepted, so the controller must not keep running.
    """
    exit_code = 17
