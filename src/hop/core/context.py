"""Per-invocation execution context.

Built once from the CLI flags and handed to the executor, the NAT
redirect manager and the persister. Configuration is loaded on first
access so that commands which never need it (``--version``,
``config example``) don't fail on a broken config file.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from hop.core.config import AppConfig
from hop.core.output import Console, console, Verbosity


@dataclass
class ExecutionContext:
    """Flags and shared collaborators for one CLI invocation.

    Attributes:
        dry_run: Report mutations instead of performing them
        yes: Answer yes to confirmation prompts
        verbosity: Output verbosity level (0-3)
        no_color: Disable colored output
        config_path: Explicit config file (None = HOP_CONFIG or default)
    """

    dry_run: bool = False
    yes: bool = False
    verbosity: int = Verbosity.NORMAL
    no_color: bool = False
    config_path: Optional[Path] = None

    _config: Optional[AppConfig] = field(default=None, repr=False)
    _console: Console = field(default_factory=lambda: console, repr=False)

    def __post_init__(self) -> None:
        self._console.configure(
            verbosity=self.verbosity,
            dry_run=self.dry_run,
            no_color=self.no_color,
        )

    @property
    def config(self) -> AppConfig:
        """Application configuration, loaded on first use.

        Raises:
            ConfigurationError: If the config file or an override is invalid
        """
        if self._config is None:
            self._config = AppConfig(config_path=self.config_path)
        return self._config

    @property
    def console(self) -> Console:
        return self._console

    @property
    def is_verbose(self) -> bool:
        return self.verbosity >= Verbosity.VERBOSE

    @property
    def should_confirm(self) -> bool:
        return not self.yes


def create_context(
    dry_run: bool = False,
    yes: bool = False,
    verbose: int = 0,
    quiet: bool = False,
    no_color: bool = False,
    config: Optional[Path] = None,
) -> ExecutionContext:
    """Create an execution context from CLI options.

    ``quiet`` wins over any number of ``-v`` flags.
    """
    if quiet:
        verbosity = Verbosity.QUIET
    else:
        verbosity = min(Verbosity.NORMAL + verbose, Verbosity.DEBUG)

    return ExecutionContext(
        dry_run=dry_run,
        yes=yes,
        verbosity=verbosity,
        no_color=no_color,
        config_path=config,
    )
