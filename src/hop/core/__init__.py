"""Core framework components for the Port Hopping CLI."""

from hop.core.exceptions import (
    HopError,
    ConfigurationError,
    ValidationError,
    ExecutionError,
    PrerequisiteError,
    FirewallError,
    ControllerUnavailableError,
    RedirectCommandError,
    PersistenceError,
)

from hop.core.context import ExecutionContext, create_context
from hop.core.output import console, Console, Verbosity
from hop.core.config import AppConfig, HopConfig
from hop.core.audit import AuditLogger, AuditEvent, AuditEventType, AuditResult, get_audit_logger
from hop.core.executor import CommandExecutor, CommandResult
from hop.core.platform import PackageManager, PersistenceMethod, PlatformContext, detect_platform

__all__ = [
    # Exceptions
    "HopError",
    "ConfigurationError",
    "ValidationError",
    "ExecutionError",
    "PrerequisiteError",
    "FirewallError",
    "ControllerUnavailableError",
    "RedirectCommandError",
    "PersistenceError",
    # Context
    "ExecutionContext",
    "create_context",
    # Output
    "console",
    "Console",
    "Verbosity",
    # Config
    "AppConfig",
    "HopConfig",
    # Audit
    "AuditLogger",
    "AuditEvent",
    "AuditEventType",
    "AuditResult",
    "get_audit_logger",
    # Executor
    "CommandExecutor",
    "CommandResult",
    # Platform
    "PackageManager",
    "PersistenceMethod",
    "PlatformContext",
    "detect_platform",
]
