"""Command execution with dry-run support.

Provides:
- Safe command execution with output capture
- Dry-run mode support (read-only queries still run)
- Timeout handling
- Binary lookup on PATH
"""

import os
import shlex
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from hop.core.context import ExecutionContext
from hop.core.exceptions import ExecutionError


# Exit status reported when the binary cannot be started
COMMAND_NOT_FOUND = 127


@dataclass
class CommandResult:
    """Result of a command execution."""
    command: list[str]
    return_code: int
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        """Check if command succeeded."""
        return self.return_code == 0

    @property
    def display(self) -> str:
        """Shell-quoted form of the command."""
        return shlex.join(self.command)


class CommandExecutor:
    """Safe command execution with dry-run support and output capture.

    Features:
    - Dry-run mode shows what would happen
    - Read-only commands still execute in dry-run
    - Output capture for processing
    - Timeout support
    """

    def __init__(
        self,
        ctx: ExecutionContext,
        *,
        default_timeout: Optional[int] = None,
    ) -> None:
        """Initialize executor with context.

        Args:
            ctx: Execution context with flags
            default_timeout: Timeout in seconds applied when run() gets none
        """
        self.ctx = ctx
        self.default_timeout = default_timeout

    def which(self, binary: str) -> Optional[str]:
        """Resolve a binary on PATH (absolute paths are checked directly)."""
        return shutil.which(binary)

    def run(
        self,
        command: list[str],
        *,
        description: Optional[str] = None,
        check: bool = True,
        capture: bool = True,
        readonly: bool = False,
        timeout: Optional[int] = None,
        env: Optional[dict[str, str]] = None,
        cwd: Optional[Path] = None,
        input_text: Optional[str] = None,
    ) -> CommandResult:
        """Execute a command safely.

        Args:
            command: Command as list of strings
            description: Human-readable description for logging
            check: Raise exception on non-zero exit
            capture: Capture stdout/stderr
            readonly: Command does not change system state; runs in dry-run too
            timeout: Command timeout in seconds
            env: Additional environment variables
            cwd: Working directory
            input_text: Text fed to the command on stdin

        Returns:
            CommandResult with output

        Raises:
            ExecutionError: If command fails and check=True
        """
        if description:
            self.ctx.console.step(description)

        cmd_display = shlex.join(command)
        self.ctx.console.debug(f"Running: {cmd_display}")

        if self.ctx.dry_run and not readonly:
            self.ctx.console.dry_run_msg(f"Would run: {cmd_display}")
            return CommandResult(
                command=command,
                return_code=0,
                stdout="",
                stderr="",
            )

        run_env = None
        if env:
            run_env = os.environ.copy()
            run_env.update(env)

        if timeout is None:
            timeout = self.default_timeout

        try:
            result = subprocess.run(
                command,
                capture_output=capture,
                text=True,
                timeout=timeout,
                env=run_env,
                cwd=cwd,
                input=input_text,
            )
        except subprocess.TimeoutExpired:
            raise ExecutionError(
                f"Command timed out after {timeout}s: {description or cmd_display}",
                command=cmd_display,
            )
        except FileNotFoundError:
            result = subprocess.CompletedProcess(
                command,
                COMMAND_NOT_FOUND,
                stdout="",
                stderr=f"{command[0]}: command not found",
            )

        cmd_result = CommandResult(
            command=command,
            return_code=result.returncode,
            stdout=(result.stdout or "") if capture else "",
            stderr=(result.stderr or "") if capture else "",
        )

        if check and result.returncode != 0:
            raise ExecutionError(
                f"Command failed: {description or cmd_display}",
                command=cmd_display,
                return_code=result.returncode,
                stderr=cmd_result.stderr or None,
            )

        return cmd_result
