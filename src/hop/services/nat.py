"""NAT redirect service for UDP port hopping.

Installs and removes REDIRECT rules in the nat PREROUTING chain that
rewrite a range of destination ports to a single local port:

- IPv4 and IPv6 (IPv6 gated by a nat table capability probe)
- Idempotent add (structured dedup against the listed rule set)
- Idempotent remove (bounded check-and-delete loop)
- Best-effort persistence after changes
- Dry-run mode support

Each address family is handled independently. A failure on one family
never rolls back or blocks the other.
"""

import shlex
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional

from hop.core.context import ExecutionContext
from hop.core.executor import CommandExecutor, CommandResult
from hop.core.exceptions import (
    ControllerUnavailableError,
    ExecutionError,
    FirewallError,
    PersistenceError,
    RedirectCommandError,
)
from hop.core.platform import PlatformContext
from hop.core.validation import validate_port, validate_port_range
from hop.services.persistence import FirewallPersister


NAT_TABLE = "nat"
PREROUTING = "PREROUTING"
REDIRECT = "REDIRECT"

DEFAULT_MAX_DELETE_ITERATIONS = 50

# iptables -C exits 1 when the rule does not exist; anything else is an error
CHECK_NOT_FOUND = 1


class AddressFamily(str, Enum):
    """Address family, each with its own controller and nat table."""
    IPV4 = "ipv4"
    IPV6 = "ipv6"

    @property
    def label(self) -> str:
        return "IPv4" if self is AddressFamily.IPV4 else "IPv6"


class Protocol(str, Enum):
    """Transport protocol of a redirect."""
    UDP = "udp"
    TCP = "tcp"


def parse_families(value: str) -> list[AddressFamily]:
    """Expand 'ipv4', 'ipv6' or 'both' into address families."""
    value = value.lower()
    if value == "both":
        return [AddressFamily.IPV4, AddressFamily.IPV6]
    return [AddressFamily(value)]


@dataclass(frozen=True)
class RedirectRule:
    """A port-range to single-port REDIRECT rule.

    Two rules are the same rule iff every field matches.
    """
    port_range_start: int
    port_range_end: int
    target_port: int
    address_family: AddressFamily = AddressFamily.IPV4
    protocol: Protocol = Protocol.UDP

    def validate(self) -> None:
        """Validate port range and target port.

        Raises:
            ValidationError: If a port is out of range or start > end
        """
        validate_port_range(self.port_range_start, self.port_range_end)
        validate_port(self.target_port, "target port")

    @property
    def dport_spec(self) -> str:
        """Destination port range as iptables expects it ("start:end")."""
        return f"{self.port_range_start}:{self.port_range_end}"

    def to_iptables_args(self) -> list[str]:
        """Convert rule to iptables rule-spec arguments."""
        return [
            "-p", self.protocol.value,
            "--dport", self.dport_spec,
            "-j", REDIRECT,
            "--to-ports", str(self.target_port),
        ]

    def for_family(self, family: AddressFamily) -> "RedirectRule":
        """Same redirect for another address family."""
        return replace(self, address_family=family)

    def __str__(self) -> str:
        return (
            f"{self.protocol.value} {self.dport_spec} -> {self.target_port} "
            f"({self.address_family.label})"
        )


def _parse_port_range(value: str, separator: str) -> tuple[int, int]:
    if separator in value:
        start, end = value.split(separator, 1)
        return int(start), int(end)
    port = int(value)
    return port, port


@dataclass(frozen=True)
class NatRule:
    """A rule parsed from iptables -S output."""
    chain: str
    protocol: Optional[str] = None
    dport: Optional[tuple[int, int]] = None
    target: Optional[str] = None
    to_ports: Optional[tuple[int, int]] = None
    extra: tuple[str, ...] = ()
    raw: str = ""

    def matches(self, rule: RedirectRule) -> bool:
        """Check structural equality with a RedirectRule.

        Any additional match option (interface, address, negation,
        comment) makes the installed rule a different rule.
        """
        return (
            self.chain == PREROUTING
            and self.protocol == rule.protocol.value
            and self.dport == (rule.port_range_start, rule.port_range_end)
            and self.target == REDIRECT
            and self.to_ports == (rule.target_port, rule.target_port)
            and not self.extra
        )

    def __str__(self) -> str:
        return self.raw or f"-A {self.chain}"


def parse_rule_line(line: str) -> Optional[NatRule]:
    """Parse a single "-A CHAIN ..." line into a NatRule.

    Returns:
        NatRule, or None for lines that are not rule appends
    """
    line = line.strip()
    if not line.startswith("-A "):
        return None

    try:
        tokens = shlex.split(line)
    except ValueError:
        tokens = line.split()

    chain = ""
    protocol = None
    dport = None
    target = None
    to_ports = None
    modules: list[str] = []
    extra: list[str] = []

    i = 0
    while i < len(tokens):
        token = tokens[i]
        value = tokens[i + 1] if i + 1 < len(tokens) else None

        if token == "!":
            # Negated match: keep the negation and its option together
            extra.extend(tokens[i:i + 3])
            i += 3
            continue

        if value is None:
            extra.append(token)
            i += 1
            continue

        if token in ("-A", "--append"):
            chain = value
        elif token in ("-p", "--protocol"):
            protocol = value.lower()
        elif token in ("-m", "--match"):
            modules.append(value)
        elif token in ("--dport", "--destination-port"):
            try:
                dport = _parse_port_range(value, ":")
            except ValueError:
                extra.extend([token, value])
        elif token in ("-j", "--jump"):
            target = value
        elif token == "--to-ports":
            try:
                to_ports = _parse_port_range(value, "-")
            except ValueError:
                extra.extend([token, value])
        else:
            extra.extend([token, value])
        i += 2

    # The implicit protocol match module carries no extra constraint
    for module in modules:
        if module != protocol:
            extra.extend(["-m", module])

    return NatRule(
        chain=chain,
        protocol=protocol,
        dport=dport,
        target=target,
        to_ports=to_ports,
        extra=tuple(extra),
        raw=line,
    )


def parse_nat_rules(output: str, chain: Optional[str] = PREROUTING) -> list[NatRule]:
    """Parse iptables -S / iptables-save output into NatRule objects.

    Policy lines (-P), chain declarations, table markers, comments and
    COMMIT are skipped.

    Args:
        output: Command output
        chain: Only keep rules of this chain (None = all chains)

    Returns:
        Rules in listing order
    """
    rules = []
    for line in output.splitlines():
        rule = parse_rule_line(line)
        if rule is None:
            continue
        if chain is not None and rule.chain != chain:
            continue
        rules.append(rule)
    return rules


class OutcomeStatus(str, Enum):
    """Per-family result of an ensure operation."""
    ADDED = "added"
    PRESENT = "already present"
    REMOVED = "removed"
    ABSENT = "already absent"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class FamilyOutcome:
    """Result of ensuring one rule for one address family."""
    rule: RedirectRule
    status: OutcomeStatus
    message: str = ""
    removed: int = 0
    error: Optional[FirewallError] = None
    persisted: Optional[bool] = None

    @property
    def family(self) -> AddressFamily:
        return self.rule.address_family

    @property
    def ok(self) -> bool:
        return self.status != OutcomeStatus.FAILED

    @property
    def changed(self) -> bool:
        """Live rule set was modified, including deletions before a failure."""
        return self.status in (OutcomeStatus.ADDED, OutcomeStatus.REMOVED) or self.removed > 0


@dataclass
class RedirectReport:
    """Aggregated result over address families, plus persistence."""
    operation: str
    outcomes: list[FamilyOutcome] = field(default_factory=list)
    persisted: Optional[bool] = None
    persistence_error: Optional[PersistenceError] = None

    @property
    def ok(self) -> bool:
        """No family failed hard."""
        return all(o.ok for o in self.outcomes)

    @property
    def changed(self) -> bool:
        return any(o.changed for o in self.outcomes)

    @property
    def handled(self) -> bool:
        """At least one family was actually processed (not skipped)."""
        return any(o.status != OutcomeStatus.SKIPPED for o in self.outcomes)

    @property
    def failures(self) -> list[FamilyOutcome]:
        return [o for o in self.outcomes if not o.ok]

    def outcome(self, family: AddressFamily) -> Optional[FamilyOutcome]:
        for o in self.outcomes:
            if o.family == family:
                return o
        return None


class NatController:
    """Packet-filter control surface for one address family."""

    def __init__(
        self,
        executor: CommandExecutor,
        family: AddressFamily,
        binary: str,
    ) -> None:
        self.executor = executor
        self.family = family
        self.binary = binary

    def available(self) -> bool:
        """Check if the controller binary is installed."""
        return self.executor.which(self.binary) is not None

    def _run(self, args: list[str], *, readonly: bool) -> CommandResult:
        # -w waits for the xtables lock instead of failing
        return self.executor.run(
            [self.binary, "-w", "-t", NAT_TABLE] + args,
            check=False,
            readonly=readonly,
        )

    def list_rules(self, chain: str = PREROUTING) -> CommandResult:
        return self._run(["-S", chain], readonly=True)

    def list_table(self) -> CommandResult:
        return self._run(["-L", "-n"], readonly=True)

    def append(self, args: list[str], chain: str = PREROUTING) -> CommandResult:
        return self._run(["-A", chain] + args, readonly=False)

    def check(self, args: list[str], chain: str = PREROUTING) -> CommandResult:
        return self._run(["-C", chain] + args, readonly=True)

    def delete(self, args: list[str], chain: str = PREROUTING) -> CommandResult:
        return self._run(["-D", chain] + args, readonly=False)


class NatRedirectManager:
    """Idempotent manager for port-hopping REDIRECT rules.

    Features:
    - Structured dedup before insert
    - Bounded removal loop
    - IPv6 capability probe, cached for this instance only
    - Soft handling of missing controllers and unsupported IPv6 nat
    - Best-effort persistence that never unwinds applied changes
    """

    def __init__(
        self,
        ctx: ExecutionContext,
        executor: CommandExecutor,
        platform: PlatformContext,
        *,
        persister: Optional[FirewallPersister] = None,
        max_delete_iterations: int = DEFAULT_MAX_DELETE_ITERATIONS,
    ) -> None:
        """Initialize the manager.

        Args:
            ctx: Execution context
            executor: Command executor
            platform: Detected platform (controller binaries)
            persister: Persistence collaborator (None = never persist)
            max_delete_iterations: Upper bound for the removal loop
        """
        self.ctx = ctx
        self.executor = executor
        self.platform = platform
        self.persister = persister
        self.max_delete_iterations = max_delete_iterations

        self.controllers = {
            AddressFamily.IPV4: NatController(executor, AddressFamily.IPV4, platform.iptables),
            AddressFamily.IPV6: NatController(executor, AddressFamily.IPV6, platform.ip6tables),
        }
        self._ipv6_nat_supported: Optional[bool] = None
        self._last_persistence_error: Optional[PersistenceError] = None

    # =========================================================================
    # Capability
    # =========================================================================

    def probe_ipv6_nat_support(self) -> bool:
        """Check whether the IPv6 nat table is usable.

        Lists the nat table without touching any rule. The answer is
        cached on this instance; kernel module availability can change
        between boots, so it is never persisted.

        Returns:
            True if ip6tables is installed and listing the nat table succeeds
        """
        if self._ipv6_nat_supported is not None:
            return self._ipv6_nat_supported

        controller = self.controllers[AddressFamily.IPV6]
        if not controller.available():
            self._ipv6_nat_supported = False
            return False

        try:
            result = controller.list_table()
        except ExecutionError as e:
            self.ctx.console.warn(f"IPv6 nat probe did not complete: {e.message}")
            self._ipv6_nat_supported = False
        else:
            self._ipv6_nat_supported = result.success
            if not result.success:
                self.ctx.console.debug(
                    f"IPv6 nat probe failed: {result.stderr.strip() or result.return_code}"
                )

        return self._ipv6_nat_supported

    def _select(self, rule: RedirectRule) -> tuple[Optional[NatController], Optional[FamilyOutcome]]:
        """Pick the controller for a rule, or a SKIPPED outcome."""
        family = rule.address_family
        controller = self.controllers[family]

        if not controller.available():
            error = ControllerUnavailableError(controller.binary, family=family.value)
            message = f"{controller.binary} not found, skipping {family.label} redirect"
            self.ctx.console.warn(message)
            return None, FamilyOutcome(rule, OutcomeStatus.SKIPPED, message, error=error)

        if family is AddressFamily.IPV6 and not self.probe_ipv6_nat_support():
            message = "ip6tables nat table not supported on this kernel, skipping IPv6 redirect"
            self.ctx.console.warn(message)
            return None, FamilyOutcome(rule, OutcomeStatus.SKIPPED, message)

        return controller, None

    # =========================================================================
    # Queries
    # =========================================================================

    def _query(self, controller: NatController) -> list[NatRule]:
        """Read the current PREROUTING rules for a controller.

        Raises:
            RedirectCommandError: If listing fails outside dry-run, or
                times out in any mode
        """
        try:
            result = controller.list_rules()
        except ExecutionError as e:
            raise RedirectCommandError(
                f"Failed to list {controller.family.label} nat PREROUTING rules: {e.message}",
                command=e.command,
                family=controller.family.value,
            ) from e
        if not result.success:
            if self.ctx.dry_run:
                self.ctx.console.verbose(
                    f"Cannot list {controller.family.label} nat rules in dry-run, "
                    "assuming none installed"
                )
                return []
            raise RedirectCommandError(
                f"Failed to list {controller.family.label} nat PREROUTING rules",
                command=result.display,
                return_code=result.return_code,
                stderr=result.stderr,
                family=controller.family.value,
            )
        return parse_nat_rules(result.stdout)

    def _matches(self, controller: NatController, rule: RedirectRule) -> list[NatRule]:
        return [r for r in self._query(controller) if r.matches(rule)]

    def list_redirects(self, family: AddressFamily) -> list[NatRule]:
        """List REDIRECT rules in nat PREROUTING for a family.

        Returns:
            Parsed rules; empty if the controller is missing or
            IPv6 nat is unsupported
        """
        controller = self.controllers[family]
        if not controller.available():
            return []
        if family is AddressFamily.IPV6 and not self.probe_ipv6_nat_support():
            return []
        return [r for r in self._query(controller) if r.target == REDIRECT]

    # =========================================================================
    # Ensure operations
    # =========================================================================

    def ensure_present(self, rule: RedirectRule, *, persist: bool = True) -> FamilyOutcome:
        """Install a redirect unless an identical one already exists.

        Args:
            rule: Redirect to install
            persist: Save the rule set if the redirect was added

        Returns:
            FamilyOutcome (ADDED, PRESENT, SKIPPED or FAILED)

        Raises:
            ValidationError: If the rule's ports are invalid
        """
        rule.validate()

        controller, skipped = self._select(rule)
        if controller is None:
            return skipped

        try:
            outcome = self._install(controller, rule)
        except RedirectCommandError as e:
            self.ctx.console.error(e.message)
            outcome = FamilyOutcome(rule, OutcomeStatus.FAILED, e.message, error=e)
        except ExecutionError as e:
            outcome = self._interrupted(rule, "add", e)

        return self._settle(outcome, persist)

    def _install(self, controller: NatController, rule: RedirectRule) -> FamilyOutcome:
        if self._matches(controller, rule):
            message = f"{rule.address_family.label} redirect already present, skipping add"
            self.ctx.console.info(message)
            return FamilyOutcome(rule, OutcomeStatus.PRESENT, message)

        self.ctx.console.step(f"Adding redirect: {rule}")
        result = controller.append(rule.to_iptables_args())
        if not result.success:
            return self._failed(rule, "add", result)

        verb = "Would add" if self.ctx.dry_run else "Added"
        message = (
            f"{verb} {rule.address_family.label} {rule.protocol.value.upper()} redirect "
            f"{rule.port_range_start}-{rule.port_range_end} -> {rule.target_port}"
        )
        self.ctx.console.success(message)
        return FamilyOutcome(rule, OutcomeStatus.ADDED, message)

    def ensure_absent(self, rule: RedirectRule, *, persist: bool = True) -> FamilyOutcome:
        """Remove every installed copy of a redirect.

        Repeats check-and-delete until the check reports no match. Zero
        matches is a no-op success. The loop is bounded by
        max_delete_iterations.

        Args:
            rule: Redirect to remove
            persist: Save the rule set if anything was deleted

        Returns:
            FamilyOutcome (REMOVED, ABSENT, SKIPPED or FAILED)

        Raises:
            ValidationError: If the rule's ports are invalid
        """
        rule.validate()

        controller, skipped = self._select(rule)
        if controller is None:
            return skipped

        if not self.ctx.dry_run:
            outcome = self._remove(controller, rule)
        else:
            try:
                outcome = self._remove_dry_run(controller, rule)
            except RedirectCommandError as e:
                self.ctx.console.error(e.message)
                outcome = FamilyOutcome(rule, OutcomeStatus.FAILED, e.message, error=e)

        return self._settle(outcome, persist)

    def _remove(self, controller: NatController, rule: RedirectRule) -> FamilyOutcome:
        args = rule.to_iptables_args()
        removed = 0
        try:
            while True:
                check = controller.check(args)
                if check.return_code == CHECK_NOT_FOUND:
                    break
                if not check.success:
                    return self._failed(rule, "check", check, removed)

                if removed >= self.max_delete_iterations:
                    error = RedirectCommandError(
                        f"{rule.address_family.label} redirect still present after "
                        f"{removed} deletions",
                        command=check.display,
                        family=rule.address_family.value,
                        rule=" ".join(args),
                        hint="Another process may be re-adding the rule",
                    )
                    self.ctx.console.error(error.message)
                    return FamilyOutcome(
                        rule, OutcomeStatus.FAILED, error.message, removed=removed, error=error
                    )

                delete = controller.delete(args)
                if not delete.success:
                    return self._failed(rule, "delete", delete, removed)
                removed += 1
        except ExecutionError as e:
            return self._interrupted(rule, "remove", e, removed)

        if removed == 0:
            message = f"{rule.address_family.label} redirect not present, nothing to remove"
            self.ctx.console.info(message)
            return FamilyOutcome(rule, OutcomeStatus.ABSENT, message)

        message = f"Removed {removed} {rule.address_family.label} redirect(s): {rule.dport_spec} -> {rule.target_port}"
        self.ctx.console.success(message)
        return FamilyOutcome(rule, OutcomeStatus.REMOVED, message, removed=removed)

    def _remove_dry_run(self, controller: NatController, rule: RedirectRule) -> FamilyOutcome:
        matches = self._matches(controller, rule)
        if not matches:
            message = f"{rule.address_family.label} redirect not present, nothing to remove"
            self.ctx.console.info(message)
            return FamilyOutcome(rule, OutcomeStatus.ABSENT, message)

        command = [controller.binary, "-w", "-t", NAT_TABLE, "-D", PREROUTING] + rule.to_iptables_args()
        for _ in matches:
            self.ctx.console.dry_run_msg("Would run: " + shlex.join(command))
        message = f"Would remove {len(matches)} {rule.address_family.label} redirect(s)"
        return FamilyOutcome(rule, OutcomeStatus.REMOVED, message, removed=len(matches))

    def _settle(self, outcome: FamilyOutcome, persist: bool) -> FamilyOutcome:
        if persist and outcome.changed:
            outcome.persisted = self.persist()
        return outcome

    def _failed(
        self,
        rule: RedirectRule,
        action: str,
        result: CommandResult,
        removed: int = 0,
    ) -> FamilyOutcome:
        error = RedirectCommandError(
            f"Failed to {action} {rule.address_family.label} redirect "
            f"{rule.dport_spec} -> {rule.target_port}",
            command=result.display,
            return_code=result.return_code,
            stderr=result.stderr,
            family=rule.address_family.value,
            rule=" ".join(rule.to_iptables_args()),
        )
        self.ctx.console.error(error.message)
        return FamilyOutcome(rule, OutcomeStatus.FAILED, error.message, removed=removed, error=error)

    def _interrupted(
        self,
        rule: RedirectRule,
        action: str,
        exc: ExecutionError,
        removed: int = 0,
    ) -> FamilyOutcome:
        """FAILED outcome for a command that never returned (timeout)."""
        error = RedirectCommandError(
            f"Failed to {action} {rule.address_family.label} redirect "
            f"{rule.dport_spec} -> {rule.target_port}: {exc.message}",
            command=exc.command,
            family=rule.address_family.value,
            rule=" ".join(rule.to_iptables_args()),
            hint="Another process may be holding the xtables lock",
        )
        self.ctx.console.error(error.message)
        return FamilyOutcome(rule, OutcomeStatus.FAILED, error.message, removed=removed, error=error)

    # =========================================================================
    # Multi-family operations
    # =========================================================================

    def ensure_present_all(
        self,
        start: int,
        end: int,
        target_port: int,
        families: Optional[list[AddressFamily]] = None,
        *,
        protocol: Protocol = Protocol.UDP,
        persist: bool = True,
    ) -> RedirectReport:
        """Ensure a redirect exists for each requested family, then persist."""
        return self._ensure_all("add", start, end, target_port, families, protocol, persist)

    def ensure_absent_all(
        self,
        start: int,
        end: int,
        target_port: int,
        families: Optional[list[AddressFamily]] = None,
        *,
        protocol: Protocol = Protocol.UDP,
        persist: bool = True,
    ) -> RedirectReport:
        """Ensure a redirect is gone for each requested family, then persist."""
        return self._ensure_all("remove", start, end, target_port, families, protocol, persist)

    def _ensure_all(
        self,
        operation: str,
        start: int,
        end: int,
        target_port: int,
        families: Optional[list[AddressFamily]],
        protocol: Protocol,
        persist: bool,
    ) -> RedirectReport:
        base = RedirectRule(start, end, target_port, protocol=protocol)
        base.validate()

        ensure = self.ensure_present if operation == "add" else self.ensure_absent
        report = RedirectReport(operation=operation)

        for family in families or list(AddressFamily):
            report.outcomes.append(ensure(base.for_family(family), persist=False))

        if persist and report.changed:
            report.persisted = self.persist()
            if report.persisted is False:
                report.persistence_error = self._last_persistence_error

        return report

    # =========================================================================
    # Persistence
    # =========================================================================

    def persist(self) -> Optional[bool]:
        """Save the live rule set so it survives a reboot.

        Failure is downgraded to a warning; the live change stays.

        Returns:
            True if saved, False if saving failed, None without a persister
        """
        if self.persister is None:
            return None

        try:
            self.persister.save()
        except PersistenceError as e:
            self._last_persistence_error = e
            self.ctx.console.warn(f"{e.message}; rules will be lost on reboot")
            for detail in e.details:
                self.ctx.console.verbose(f"  {detail}")
            if e.hint:
                self.ctx.console.hint(e.hint)
            return False

        return True
