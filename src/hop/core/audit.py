"""Audit trail of firewall changes.

One JSON object per line in /var/log/hop/audit.log. Writes take an
exclusive flock so concurrent invocations never interleave lines, and
the file is rotated by size (audit.log.1 ... audit.log.N).

The audit trail is a side channel: if it can't be written, the
operation it describes still succeeds and the problem is only shown
at debug level.
"""

import fcntl
import json
import os
import pwd
import socket
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from hop.core.output import console


DEFAULT_LOG_PATH = Path("/var/log/hop/audit.log")
DEFAULT_MAX_SIZE_MB = 20
DEFAULT_BACKUP_COUNT = 5


class AuditEventType(Enum):
    """Auditable operations."""
    REDIRECT_ADD = "redirect.add"
    REDIRECT_REMOVE = "redirect.remove"
    FIREWALL_SAVE = "firewall.save"
    PREREQUISITES_INSTALL = "prerequisites.install"
    CONFIG_INIT = "config.init"


class AuditResult(Enum):
    """Outcome of an audited operation.

    PARTIAL covers redirects applied to some families only, or applied
    but not persisted.
    """
    SUCCESS = "success"
    FAILURE = "failure"
    DRY_RUN = "dry_run"
    PARTIAL = "partial"


def _current_user() -> str:
    uid = os.geteuid()
    try:
        return pwd.getpwuid(uid).pw_name
    except KeyError:
        return str(uid)


@dataclass
class AuditEvent:
    """A single audit log entry."""
    event_type: AuditEventType
    result: AuditResult
    target: Optional[str] = None
    message: Optional[str] = None
    error: Optional[str] = None
    parameters: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    user: str = field(default_factory=_current_user)
    host: str = field(default_factory=socket.gethostname)
    session_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "result": self.result.value,
            "user": self.user,
            "host": self.host,
            "target": self.target,
            "message": self.message,
            "error": self.error,
            "parameters": self.parameters,
            "session_id": self.session_id,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


class AuditLogger:
    """Appends AuditEvents to a size-rotated JSON-lines file.

    All events logged through one instance share a session id, so the
    lines written by a single ``hop`` invocation can be grouped.
    """

    def __init__(
        self,
        log_path: Optional[Path] = None,
        max_size_mb: int = DEFAULT_MAX_SIZE_MB,
        backup_count: int = DEFAULT_BACKUP_COUNT,
        enabled: bool = True,
    ) -> None:
        self.log_path = log_path or DEFAULT_LOG_PATH
        self.max_size_bytes = max_size_mb * 1024 * 1024
        self.backup_count = backup_count
        self.enabled = enabled
        self.session_id = str(uuid.uuid4())

    def log(self, event: AuditEvent) -> None:
        if not self.enabled:
            return

        event.session_id = self.session_id
        line = event.to_json() + "\n"

        try:
            self.log_path.parent.mkdir(mode=0o750, parents=True, exist_ok=True)
            fd = os.open(self.log_path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o640)
        except OSError as e:
            console.debug(f"Cannot open audit log {self.log_path}: {e}")
            return

        try:
            with os.fdopen(fd, "a") as f:
                fcntl.flock(f.fileno(), fcntl.LOCK_EX)
                f.write(line)
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            console.debug(f"Failed to write audit log: {e}")
            return

        try:
            if self.log_path.stat().st_size > self.max_size_bytes:
                self._rotate()
        except OSError as e:
            console.debug(f"Audit log rotation failed: {e}")

    def _backup(self, index: int) -> Path:
        return self.log_path.with_name(f"{self.log_path.name}.{index}")

    def _rotate(self) -> None:
        """Shift audit.log.N-1 -> audit.log.N and start a fresh audit.log."""
        self._backup(self.backup_count).unlink(missing_ok=True)
        for index in range(self.backup_count - 1, 0, -1):
            if self._backup(index).exists():
                self._backup(index).rename(self._backup(index + 1))
        self.log_path.rename(self._backup(1))
        self.log_path.touch(mode=0o640)

    def log_result(
        self,
        event_type: AuditEventType,
        result: AuditResult,
        target: str,
        *,
        message: Optional[str] = None,
        error: Optional[str] = None,
        parameters: Optional[dict[str, Any]] = None,
    ) -> None:
        self.log(AuditEvent(
            event_type=event_type,
            result=result,
            target=target,
            message=message,
            error=error,
            parameters=parameters or {},
        ))

    def log_success(
        self,
        event_type: AuditEventType,
        target: str,
        message: Optional[str] = None,
    ) -> None:
        self.log_result(event_type, AuditResult.SUCCESS, target, message=message)

    def log_failure(
        self,
        event_type: AuditEventType,
        target: str,
        error: str,
    ) -> None:
        self.log_result(event_type, AuditResult.FAILURE, target, error=error)


_audit_logger: Optional[AuditLogger] = None


def get_audit_logger() -> AuditLogger:
    """Process-wide audit logger."""
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = AuditLogger()
    return _audit_logger
