"""Core framework components for nfguard.

Only leaf modules are re-exported here; import config, context and
executor from their own modules.
"""

from nfguard.core.exceptions import (
    NFGuardError,
    ConfigurationError,
    ExecutionError,
    PrerequisiteError,
    FirewallError,
    VerificationError,
    FatalInstallError,
)

from nfguard.core.output import console, Console, Verbosity
from nfguard.core.audit import (
    AuditLogger,
    AuditEvent,
    AuditEventType,
    AuditResult,
    get_audit_logger,
    configure_audit_logger,
)

__all__ = [
    # Exceptions
    "NFGuardError",
    "ConfigurationError",
    "ExecutionError",
    "PrerequisiteError",
    "FirewallError",
    "VerificationError",
    "FatalInstallError",
    # Output
    "console",
    "Console",
    "Verbosity",
    # Audit
    "AuditLogger",
    "AuditEvent",
    "AuditEventType",
    "AuditResult",
    "get_audit_logger",
    "configure_audit_logger",
]
