"""Main CLI entry point using Typer.

This module defines the root CLI application and global options.
Command groups are registered from submodules.
"""

import os
from pathlib import Path
from typing import Optional, Annotated

import typer
from rich.console import Console

from hop import __version__
from hop.core.audit import AuditEventType, AuditResult, get_audit_logger
from hop.core.context import ExecutionContext, create_context
from hop.core.executor import CommandExecutor
from hop.core.output import console as app_console
from hop.core.config import (
    DEFAULT_CONFIG_PATH,
    AppConfig,
    get_example_config,
    init_config,
)
from hop.core.exceptions import HopError, PrerequisiteError
from hop.core.platform import detect_platform
from hop.services.nat import AddressFamily, NatRedirectManager
from hop.services.persistence import install_prerequisites


# Create the main Typer app
app = typer.Typer(
    name="hop",
    help="Port Hopping CLI - UDP port-hopping NAT redirect manager.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    pretty_exceptions_enable=True,
    pretty_exceptions_show_locals=False,
)

config_app = typer.Typer(
    name="config",
    help="Configuration management.",
    no_args_is_help=True,
)

# Import sub-commands
from hop.commands.redirect import app as redirect_app

# Register command groups
app.add_typer(redirect_app, name="redirect")
app.add_typer(config_app, name="config")


# Type aliases for common options
DryRunOption = Annotated[
    bool,
    typer.Option(
        "--dry-run",
        help="Preview changes without executing. Shows what would happen.",
        is_flag=True,
    ),
]

ForceOption = Annotated[
    bool,
    typer.Option(
        "--force",
        "-f",
        help="Overwrite existing files.",
        is_flag=True,
    ),
]

VerboseOption = Annotated[
    int,
    typer.Option(
        "--verbose",
        "-v",
        count=True,
        help="Increase output verbosity. Can be repeated (-v, -vv).",
    ),
]

QuietOption = Annotated[
    bool,
    typer.Option(
        "--quiet",
        "-q",
        help="Suppress non-essential output. Only show errors.",
        is_flag=True,
    ),
]

NoColorOption = Annotated[
    bool,
    typer.Option(
        "--no-color",
        help="Disable colored output.",
        is_flag=True,
    ),
]

ConfigOption = Annotated[
    Optional[Path],
    typer.Option(
        "--config",
        "-c",
        help=f"Path to configuration file. Default: {DEFAULT_CONFIG_PATH}",
        exists=False,
        file_okay=True,
        dir_okay=False,
    ),
]


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console = Console()
        console.print(f"hop version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            "-V",
            callback=version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
) -> None:
    """Port Hopping CLI - UDP port-hopping NAT redirect manager.

    Redirects a range of UDP ports to a single proxy listen port with
    iptables/ip6tables nat PREROUTING rules.

    [bold]Features:[/bold]
    - Idempotent add and remove
    - IPv6 support where the kernel provides a nat table
    - Rule persistence across reboots
    - Dry-run mode to preview changes
    - Audit logging of all changes

    [bold]Examples:[/bold]
        hop redirect add 35000 36000 443 --dry-run
        hop redirect apply
        hop redirect list
        hop probe
        hop config show
    """
    pass


def get_context(
    dry_run: bool = False,
    verbose: int = 0,
    quiet: bool = False,
    no_color: bool = False,
    config: Optional[Path] = None,
) -> ExecutionContext:
    """Create execution context from CLI options.

    This is a helper for commands to create a context from global options.
    """
    return create_context(
        dry_run=dry_run,
        verbose=verbose,
        quiet=quiet,
        no_color=no_color,
        config=config,
    )


def handle_error(error: HopError) -> None:
    """Handle a HopError by printing formatted error and exiting."""
    app_console.error(error.message)

    if error.details:
        for detail in error.details:
            app_console.print(f"  [dim]{detail}[/dim]")

    if error.hint:
        app_console.hint(error.hint)

    raise typer.Exit(error.exit_code)


# ============================================================================
# Host commands
# ============================================================================

@app.command("probe")
def probe(
    verbose: VerboseOption = 0,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Show packet-filter capabilities of this host.

    Reports which controllers are installed, whether the IPv6 nat table
    is usable and how rules would be persisted. Changes nothing.

    [bold]Examples:[/bold]
        sudo hop probe
    """
    ctx = get_context(verbose=verbose, no_color=no_color, config=config)

    try:
        firewall = ctx.config.firewall
        executor = CommandExecutor(ctx, default_timeout=firewall.command_timeout)
        platform = detect_platform(firewall)
        manager = NatRedirectManager(ctx, executor, platform)

        ipv4 = manager.controllers[AddressFamily.IPV4]
        ipv6 = manager.controllers[AddressFamily.IPV6]

        ctx.console.summary("Host capabilities", {
            "Distribution": platform.os_id or "unknown",
            "Package manager": platform.package_manager.value if platform.package_manager else "none",
            f"{ipv4.binary}": ipv4.available(),
            f"{ipv6.binary}": ipv6.available(),
            "IPv6 nat table": manager.probe_ipv6_nat_support(),
            "Persistence": platform.persistence.value,
        })

    except HopError as e:
        handle_error(e)


@app.command("install-deps")
def install_deps(
    dry_run: DryRunOption = False,
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Install iptables and a rule persistence mechanism.

    Uses the detected package manager (apt, dnf, yum or apk).

    [bold]Examples:[/bold]
        sudo hop install-deps
        hop install-deps --dry-run
    """
    ctx = get_context(
        dry_run=dry_run, verbose=verbose, quiet=quiet, no_color=no_color, config=config,
    )

    if os.geteuid() != 0 and not ctx.dry_run:
        ctx.console.error("This operation requires root privileges")
        ctx.console.hint("Run with: sudo hop install-deps")
        raise typer.Exit(PrerequisiteError.exit_code)

    audit = get_audit_logger()

    try:
        firewall = ctx.config.firewall
        executor = CommandExecutor(ctx)
        platform = detect_platform(firewall)
        packages = install_prerequisites(ctx, executor, platform)
    except HopError as e:
        audit.log_failure(AuditEventType.PREREQUISITES_INSTALL, "packages", str(e))
        handle_error(e)

    ctx.console.operation_summary("Install prerequisites", True, {
        "Package manager": platform.package_manager.value,
        "Packages": ", ".join(packages),
        # Re-detect: the install may have provided a persistence tool
        "Persistence": detect_platform(firewall).persistence.value,
    })

    audit.log_result(
        AuditEventType.PREREQUISITES_INSTALL,
        AuditResult.DRY_RUN if dry_run else AuditResult.SUCCESS,
        ",".join(packages),
    )


# ============================================================================
# Config commands
# ============================================================================

@config_app.command("show")
def config_show(
    config: ConfigOption = None,
    verbose: VerboseOption = 0,
    no_color: NoColorOption = False,
) -> None:
    """Show current configuration.

    Displays the loaded configuration and any environment overrides.
    """
    ctx = get_context(verbose=verbose, no_color=no_color, config=config)

    try:
        app_config = ctx.config

        ctx.console.print()
        ctx.console.print(f"[bold]Configuration file:[/bold] {app_config.config_path}")
        ctx.console.print(f"[bold]File exists:[/bold] {app_config.config_path.exists()}")
        ctx.console.print()

        ctx.console.yaml(app_config.config.to_yaml(), title="Configuration")

        env = app_config.env
        ctx.console.summary("Environment overrides", {
            "HOP_IPTABLES": env.hop_iptables or "Not set",
            "HOP_IP6TABLES": env.hop_ip6tables or "Not set",
            "HOP_PERSISTENCE": env.hop_persistence or "Not set",
        })

    except HopError as e:
        handle_error(e)


@config_app.command("init")
def config_init(
    config: ConfigOption = None,
    force: ForceOption = False,
    no_color: NoColorOption = False,
) -> None:
    """Initialize a new configuration file.

    Creates a configuration file with sensible defaults and comments.
    """
    ctx = get_context(no_color=no_color, config=config)
    config_path = ctx.config_path or DEFAULT_CONFIG_PATH

    try:
        if config_path.exists() and not force:
            ctx.console.error(f"Configuration file already exists: {config_path}")
            ctx.console.hint("Use --force to overwrite")
            raise typer.Exit(1)

        init_config(config_path, force=force)
        get_audit_logger().log_success(AuditEventType.CONFIG_INIT, str(config_path))
        ctx.console.success(f"Configuration file created: {config_path}")
        ctx.console.info("Edit the file to set your port range, then run: hop redirect apply")

    except HopError as e:
        handle_error(e)
    except OSError as e:
        ctx.console.error(f"Cannot write {config_path}: {e}")
        raise typer.Exit(1)


@config_app.command("validate")
def config_validate(
    config: ConfigOption = None,
    verbose: VerboseOption = 0,
    no_color: NoColorOption = False,
) -> None:
    """Validate configuration file.

    Checks that the configuration file exists, is valid YAML,
    and all values pass validation.
    """
    ctx = get_context(verbose=verbose, no_color=no_color, config=config)

    try:
        # This will raise ConfigurationError if invalid
        app_config = AppConfig(config_path=ctx.config_path)

        if not app_config.config_path.exists():
            ctx.console.warn(f"Configuration file not found, defaults apply: {app_config.config_path}")
        else:
            ctx.console.success(f"Configuration is valid: {app_config.config_path}")

        if ctx.is_verbose:
            ctx.console.yaml(app_config.config.to_yaml())

        warnings = []
        hopping = app_config.port_hopping
        if hopping.start <= hopping.target_port <= hopping.end:
            warnings.append(
                f"target_port {hopping.target_port} lies inside the hopping range"
            )
        if app_config.firewall.persistence == "none":
            warnings.append("persistence is 'none': rules will be lost on reboot")

        if warnings:
            ctx.console.print()
            for warning in warnings:
                ctx.console.warn(warning)

    except HopError as e:
        handle_error(e)


@config_app.command("example")
def config_example(no_color: NoColorOption = False) -> None:
    """Print example configuration file.

    Outputs a complete example configuration with comments.
    Useful as a starting point for creating your own config.
    """
    ctx = get_context(no_color=no_color)
    example = get_example_config()
    ctx.console.print(example)


if __name__ == "__main__":
    app()
