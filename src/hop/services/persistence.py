"""Firewall rule persistence and prerequisite installation.

Saving is a single "make the live rule set survive a reboot" action whose
command depends on the platform:

- netfilter-persistent save (Debian/Ubuntu with iptables-persistent)
- service iptables save (RHEL family with iptables-services)
- /etc/init.d/iptables save (Alpine/OpenRC)
"""

from pathlib import Path

from hop.core.context import ExecutionContext
from hop.core.executor import CommandExecutor
from hop.core.exceptions import PersistenceError, PrerequisiteError
from hop.core.platform import (
    OPENRC_IP6TABLES_SCRIPT,
    OPENRC_IPTABLES_SCRIPT,
    PackageManager,
    PersistenceMethod,
    PlatformContext,
)


IP6TABLES_SERVICE_UNIT = Path("/usr/lib/systemd/system/ip6tables.service")

# Packet-filter and persistence packages per package manager
PREREQUISITE_PACKAGES: dict[PackageManager, list[str]] = {
    PackageManager.APT: ["iptables", "iptables-persistent", "netfilter-persistent"],
    PackageManager.DNF: ["iptables", "iptables-services"],
    PackageManager.YUM: ["iptables", "iptables-services"],
    PackageManager.APK: ["iptables", "ip6tables"],
}

# Answer iptables-persistent's install-time questions
DEBCONF_PRESEED = (
    "iptables-persistent iptables-persistent/autosave_v4 boolean true\n"
    "iptables-persistent iptables-persistent/autosave_v6 boolean true\n"
)


class FirewallPersister:
    """Saves the live rule set using the platform's mechanism."""

    def __init__(
        self,
        ctx: ExecutionContext,
        executor: CommandExecutor,
        platform: PlatformContext,
    ) -> None:
        self.ctx = ctx
        self.executor = executor
        self.platform = platform

    @property
    def method(self) -> PersistenceMethod:
        return self.platform.persistence

    def commands(self) -> list[list[str]]:
        """Commands that persist IPv4 and, where available, IPv6 rules."""
        if self.method == PersistenceMethod.NETFILTER_PERSISTENT:
            return [["netfilter-persistent", "save"]]

        if self.method == PersistenceMethod.SERVICE:
            commands = [["service", "iptables", "save"]]
            if IP6TABLES_SERVICE_UNIT.exists():
                commands.append(["service", "ip6tables", "save"])
            return commands

        if self.method == PersistenceMethod.OPENRC:
            commands = [[str(OPENRC_IPTABLES_SCRIPT), "save"]]
            if OPENRC_IP6TABLES_SCRIPT.exists():
                commands.append([str(OPENRC_IP6TABLES_SCRIPT), "save"])
            return commands

        return []

    def save(self) -> None:
        """Save current rules to persistent storage.

        Raises:
            PersistenceError: If no mechanism is available or a save
                command fails
        """
        commands = self.commands()
        if not commands:
            raise PersistenceError(
                "No firewall persistence mechanism available",
                method=self.method.value,
                hint="Install one with: hop install-deps",
            )

        self.ctx.console.step(f"Saving firewall rules ({self.method.value})")

        for command in commands:
            result = self.executor.run(command, check=False)
            if not result.success:
                raise PersistenceError(
                    f"Failed to save firewall rules: {result.display}",
                    method=self.method.value,
                    details=[f"Exit code: {result.return_code}"]
                    + ([f"Error output: {result.stderr.strip()}"] if result.stderr.strip() else []),
                )

        if not self.ctx.dry_run:
            self.ctx.console.info("Firewall rules saved")


def install_prerequisites(
    ctx: ExecutionContext,
    executor: CommandExecutor,
    platform: PlatformContext,
) -> list[str]:
    """Install the packet-filter tools and a persistence mechanism.

    Args:
        ctx: Execution context
        executor: Command executor
        platform: Detected platform

    Returns:
        Packages that were requested

    Raises:
        PrerequisiteError: If no supported package manager was detected
        ExecutionError: If the install command fails
    """
    manager = platform.package_manager
    if manager is None:
        raise PrerequisiteError(
            "No supported package manager detected (apt/dnf/yum/apk)",
            hint="Install iptables and a rule persistence tool manually",
        )

    packages = PREREQUISITE_PACKAGES[manager]

    update = executor.run(
        manager.update_command,
        description=f"Refreshing package index ({manager.value})",
        check=False,
    )
    if not update.success:
        ctx.console.warn("Package index refresh failed, continuing with install")

    env = None
    if manager == PackageManager.APT:
        env = {"DEBIAN_FRONTEND": "noninteractive"}
        executor.run(
            ["debconf-set-selections"],
            check=False,
            input_text=DEBCONF_PRESEED,
        )

    executor.run(
        manager.install_command + packages,
        description=f"Installing {', '.join(packages)}",
        env=env,
    )

    if manager in (PackageManager.DNF, PackageManager.YUM):
        enable = executor.run(
            ["systemctl", "enable", "--now", "iptables"],
            description="Enabling iptables service",
            check=False,
        )
        if not enable.success:
            ctx.console.warn("Could not enable the iptables service")

    ctx.console.success("Prerequisites installed")
    return packages
