"""Port-hopping redirect commands.

Manages the nat PREROUTING REDIRECT rules that send a UDP port range
to the proxy listen port:
- Idempotent add and remove
- IPv4 and IPv6 (IPv6 only where the kernel supports nat)
- Rule persistence across reboots
- Dry-run previews
"""

import os
from pathlib import Path
from typing import Annotated, Optional

import typer

from hop.core import (
    AuditEventType,
    AuditResult,
    CommandExecutor,
    ExecutionContext,
    FirewallError,
    HopError,
    PrerequisiteError,
    ValidationError,
    console,
    create_context,
    detect_platform,
    get_audit_logger,
)
from hop.services.nat import (
    AddressFamily,
    NatRedirectManager,
    OutcomeStatus,
    RedirectReport,
    parse_families,
)
from hop.services.persistence import FirewallPersister


app = typer.Typer(
    name="redirect",
    help="Manage UDP port-hopping NAT redirects.",
    no_args_is_help=True,
)


# Shared options
FamilyOption = Annotated[
    Optional[str],
    typer.Option("--family", help="Address family: ipv4, ipv6 or both"),
]
NoSaveOption = Annotated[
    bool,
    typer.Option("--no-save", help="Do not persist rules after changing them"),
]
DryRunOption = Annotated[
    bool,
    typer.Option("--dry-run", help="Preview changes without executing"),
]
YesOption = Annotated[
    bool,
    typer.Option("--yes", "-y", help="Skip confirmation prompts"),
]
VerboseOption = Annotated[
    int,
    typer.Option("--verbose", "-v", count=True, help="Increase verbosity"),
]
NoColorOption = Annotated[
    bool,
    typer.Option("--no-color", help="Disable colored output"),
]
ConfigOption = Annotated[
    Optional[Path],
    typer.Option("--config", "-c", help="Path to configuration file"),
]

_STATUS_STYLE = {
    OutcomeStatus.ADDED: "[green]added[/green]",
    OutcomeStatus.PRESENT: "[green]already present[/green]",
    OutcomeStatus.REMOVED: "[green]removed[/green]",
    OutcomeStatus.ABSENT: "[green]already absent[/green]",
    OutcomeStatus.SKIPPED: "[yellow]skipped[/yellow]",
    OutcomeStatus.FAILED: "[red]failed[/red]",
}


def _parse_family(family: str) -> list[AddressFamily]:
    """Parse and validate an address family selection.

    Raises:
        ValidationError: If family is not ipv4, ipv6 or both
    """
    try:
        return parse_families(family)
    except ValueError:
        raise ValidationError(
            f"Invalid address family: {family}",
            hint="Valid families: ipv4, ipv6, both",
        )


def _handle_error(error: HopError) -> None:
    """Handle a HopError by printing formatted error and exiting."""
    console.error(error.message)

    if error.details:
        for detail in error.details:
            console.print(f"  [dim]{detail}[/dim]")

    if error.hint:
        console.hint(error.hint)

    raise typer.Exit(error.exit_code)


def _get_redirect_service(
    dry_run: bool = False,
    yes: bool = False,
    verbose: int = 0,
    no_color: bool = False,
    config: Optional[Path] = None,
) -> tuple[ExecutionContext, NatRedirectManager]:
    """Create context and NAT redirect manager."""
    ctx = create_context(
        dry_run=dry_run,
        yes=yes,
        verbose=verbose,
        no_color=no_color,
        config=config,
    )

    try:
        firewall = ctx.config.firewall
    except HopError as e:
        _handle_error(e)

    executor = CommandExecutor(ctx, default_timeout=firewall.command_timeout)
    platform = detect_platform(firewall)
    ctx.console.debug(f"Platform: {platform}, persistence: {platform.persistence.value}")

    manager = NatRedirectManager(
        ctx,
        executor,
        platform,
        persister=FirewallPersister(ctx, executor, platform),
        max_delete_iterations=firewall.max_delete_iterations,
    )
    return ctx, manager


def _check_root(ctx: ExecutionContext) -> None:
    """Check for root privileges."""
    if os.geteuid() != 0 and not ctx.dry_run:
        ctx.console.error("This operation requires root privileges")
        ctx.console.hint("Run with: sudo hop redirect ...")
        raise typer.Exit(PrerequisiteError.exit_code)


def _print_report(ctx: ExecutionContext, report: RedirectReport) -> None:
    rows = []
    for outcome in report.outcomes:
        rows.append([
            outcome.family.label,
            outcome.rule.dport_spec,
            str(outcome.rule.target_port),
            _STATUS_STYLE[outcome.status],
            outcome.message,
        ])
    ctx.console.print()
    ctx.console.table(
        f"Redirect {report.operation}",
        ["Family", "Ports", "To port", "Result", "Details"],
        rows,
    )

    for failure in report.failures:
        if failure.error is not None:
            for detail in failure.error.details:
                ctx.console.print(f"  [dim]{detail}[/dim]")

    if report.persisted is False:
        ctx.console.warn("Rules are active but were not persisted")


def _finish(
    ctx: ExecutionContext,
    report: RedirectReport,
    event_type: AuditEventType,
) -> None:
    """Print, audit and turn a report into an exit status."""
    _print_report(ctx, report)

    target = "/".join(sorted({o.rule.dport_spec for o in report.outcomes}))
    parameters = {
        o.family.value: o.status.value for o in report.outcomes
    }

    if ctx.dry_run:
        result = AuditResult.DRY_RUN
    elif not report.ok:
        result = AuditResult.FAILURE
    elif not report.handled or report.persisted is False or any(
        o.status == OutcomeStatus.SKIPPED for o in report.outcomes
    ):
        result = AuditResult.PARTIAL
    else:
        result = AuditResult.SUCCESS

    get_audit_logger().log_result(
        event_type,
        result,
        target,
        error="; ".join(o.message for o in report.failures) or None,
        parameters=parameters,
    )

    if not report.ok:
        raise typer.Exit(FirewallError.exit_code)

    if not report.handled:
        ctx.console.error("No usable packet-filter controller found")
        ctx.console.hint("Install iptables with: hop install-deps")
        raise typer.Exit(PrerequisiteError.exit_code)


def _resolve_families(ctx: ExecutionContext, family: Optional[str]) -> list[AddressFamily]:
    return _parse_family(family or ctx.config.port_hopping.families)


# =============================================================================
# Add / Remove
# =============================================================================

@app.command("add")
def redirect_add(
    start: Annotated[int, typer.Argument(help="First port of the hopping range")],
    end: Annotated[int, typer.Argument(help="Last port of the hopping range")],
    target: Annotated[int, typer.Argument(help="Local port traffic is redirected to")],
    family: FamilyOption = None,
    no_save: NoSaveOption = False,
    dry_run: DryRunOption = False,
    verbose: VerboseOption = 0,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Redirect a UDP port range to a local port.

    Safe to re-run: an identical rule is never added twice.

    [bold]Examples:[/bold]

        sudo hop redirect add 35000 36000 443
        hop redirect add 35000 36000 443 --family ipv4 --dry-run
    """
    ctx, manager = _get_redirect_service(
        dry_run=dry_run, verbose=verbose, no_color=no_color, config=config,
    )
    _check_root(ctx)

    try:
        families = _resolve_families(ctx, family)
        report = manager.ensure_present_all(
            start, end, target, families, persist=not no_save,
        )
    except HopError as e:
        get_audit_logger().log_failure(AuditEventType.REDIRECT_ADD, f"{start}:{end}", str(e))
        _handle_error(e)

    _finish(ctx, report, AuditEventType.REDIRECT_ADD)


@app.command("remove")
def redirect_remove(
    start: Annotated[int, typer.Argument(help="First port of the hopping range")],
    end: Annotated[int, typer.Argument(help="Last port of the hopping range")],
    target: Annotated[int, typer.Argument(help="Local port traffic is redirected to")],
    family: FamilyOption = None,
    no_save: NoSaveOption = False,
    dry_run: DryRunOption = False,
    verbose: VerboseOption = 0,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Remove every copy of a UDP port-range redirect.

    Removing a redirect that is not installed is not an error.

    [bold]Examples:[/bold]

        sudo hop redirect remove 35000 36000 443
    """
    ctx, manager = _get_redirect_service(
        dry_run=dry_run, verbose=verbose, no_color=no_color, config=config,
    )
    _check_root(ctx)

    try:
        families = _resolve_families(ctx, family)
        report = manager.ensure_absent_all(
            start, end, target, families, persist=not no_save,
        )
    except HopError as e:
        get_audit_logger().log_failure(AuditEventType.REDIRECT_REMOVE, f"{start}:{end}", str(e))
        _handle_error(e)

    _finish(ctx, report, AuditEventType.REDIRECT_REMOVE)


# =============================================================================
# Apply / Clear (configured range)
# =============================================================================

@app.command("apply")
def redirect_apply(
    family: FamilyOption = None,
    no_save: NoSaveOption = False,
    dry_run: DryRunOption = False,
    verbose: VerboseOption = 0,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Install the redirect configured in the config file.

    [bold]Examples:[/bold]

        sudo hop redirect apply
        hop redirect apply --config ./hop.yaml --dry-run
    """
    ctx, manager = _get_redirect_service(
        dry_run=dry_run, verbose=verbose, no_color=no_color, config=config,
    )
    _check_root(ctx)

    try:
        hopping = ctx.config.port_hopping
        families = _resolve_families(ctx, family)
        report = manager.ensure_present_all(
            hopping.start, hopping.end, hopping.target_port, families,
            persist=not no_save,
        )
    except HopError as e:
        get_audit_logger().log_failure(AuditEventType.REDIRECT_ADD, "config", str(e))
        _handle_error(e)

    _finish(ctx, report, AuditEventType.REDIRECT_ADD)


@app.command("clear")
def redirect_clear(
    family: FamilyOption = None,
    no_save: NoSaveOption = False,
    dry_run: DryRunOption = False,
    yes: YesOption = False,
    verbose: VerboseOption = 0,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Remove the redirect configured in the config file.

    Only the exact configured rule is removed; other nat rules are untouched.

    [bold]Examples:[/bold]

        sudo hop redirect clear --yes
    """
    ctx, manager = _get_redirect_service(
        dry_run=dry_run, yes=yes, verbose=verbose, no_color=no_color, config=config,
    )
    _check_root(ctx)

    try:
        hopping = ctx.config.port_hopping
        families = _resolve_families(ctx, family)

        if ctx.should_confirm and not dry_run:
            question = (
                f"Remove redirect {hopping.start}:{hopping.end} -> {hopping.target_port}?"
            )
            if not ctx.console.confirm(question):
                ctx.console.warn("Operation cancelled")
                raise typer.Exit(0)

        report = manager.ensure_absent_all(
            hopping.start, hopping.end, hopping.target_port, families,
            persist=not no_save,
        )
    except HopError as e:
        get_audit_logger().log_failure(AuditEventType.REDIRECT_REMOVE, "config", str(e))
        _handle_error(e)

    _finish(ctx, report, AuditEventType.REDIRECT_REMOVE)


# =============================================================================
# List / Save
# =============================================================================

@app.command("list")
def redirect_list(
    family: FamilyOption = None,
    verbose: VerboseOption = 0,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """List REDIRECT rules in the nat PREROUTING chain.

    [bold]Examples:[/bold]

        sudo hop redirect list
        sudo hop redirect list --family ipv6
    """
    ctx, manager = _get_redirect_service(verbose=verbose, no_color=no_color, config=config)

    try:
        families = _parse_family(family or "both")
        rows = []
        for fam in families:
            for rule in manager.list_redirects(fam):
                ports = "-"
                if rule.dport:
                    ports = f"{rule.dport[0]}:{rule.dport[1]}"
                to_port = "-"
                if rule.to_ports:
                    to_port = str(rule.to_ports[0])
                    if rule.to_ports[1] != rule.to_ports[0]:
                        to_port = f"{rule.to_ports[0]}-{rule.to_ports[1]}"
                rows.append([
                    fam.label,
                    rule.protocol or "all",
                    ports,
                    to_port,
                    " ".join(rule.extra) or "-",
                ])
    except HopError as e:
        _handle_error(e)

    if not rows:
        ctx.console.info("No NAT redirects installed")
        return

    ctx.console.table(
        "NAT PREROUTING redirects",
        ["Family", "Protocol", "Ports", "To port", "Extra matches"],
        rows,
    )


@app.command("save")
def redirect_save(
    dry_run: DryRunOption = False,
    verbose: VerboseOption = 0,
    no_color: NoColorOption = False,
    config: ConfigOption = None,
) -> None:
    """Persist the current rule set so it survives a reboot.

    [bold]Examples:[/bold]

        sudo hop redirect save
    """
    ctx, manager = _get_redirect_service(
        dry_run=dry_run, verbose=verbose, no_color=no_color, config=config,
    )
    _check_root(ctx)
    audit = get_audit_logger()

    try:
        manager.persister.save()
    except HopError as e:
        audit.log_failure(AuditEventType.FIREWALL_SAVE, manager.platform.persistence.value, str(e))
        _handle_error(e)

    if dry_run:
        audit.log_result(
            AuditEventType.FIREWALL_SAVE, AuditResult.DRY_RUN, manager.platform.persistence.value,
        )
    else:
        audit.log_success(AuditEventType.FIREWALL_SAVE, manager.platform.persistence.value)
        ctx.console.success("Firewall rules persisted")
