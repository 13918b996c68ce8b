"""Host platform detection.

Resolves, once per invocation, which package manager, packet-filter
binaries and rule persistence mechanism apply on this host. The result is
an explicit PlatformContext handed to the NAT redirect manager and the
persister.
"""

import shutil
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

from hop.core.config import FirewallConfig


OS_RELEASE_PATH = Path("/etc/os-release")
OPENRC_IPTABLES_SCRIPT = Path("/etc/init.d/iptables")
OPENRC_IP6TABLES_SCRIPT = Path("/etc/init.d/ip6tables")


class PackageManager(str, Enum):
    """Supported system package managers."""
    APT = "apt"
    DNF = "dnf"
    YUM = "yum"
    APK = "apk"

    @property
    def install_command(self) -> list[str]:
        """Non-interactive install command prefix."""
        return {
            PackageManager.APT: ["apt-get", "install", "-y"],
            PackageManager.DNF: ["dnf", "install", "-y"],
            PackageManager.YUM: ["yum", "install", "-y"],
            PackageManager.APK: ["apk", "add", "--no-cache"],
        }[self]

    @property
    def update_command(self) -> list[str]:
        """Package index refresh command."""
        return {
            PackageManager.APT: ["apt-get", "update", "-y"],
            PackageManager.DNF: ["dnf", "makecache"],
            PackageManager.YUM: ["yum", "makecache"],
            PackageManager.APK: ["apk", "update"],
        }[self]


class PersistenceMethod(str, Enum):
    """How firewall rules are saved to survive a reboot."""
    NETFILTER_PERSISTENT = "netfilter-persistent"
    SERVICE = "service"
    OPENRC = "openrc"
    NONE = "none"


# Probe order matters: apt-get hosts may also ship other tools
_PACKAGE_MANAGER_BINARIES = [
    ("apt-get", PackageManager.APT),
    ("dnf", PackageManager.DNF),
    ("yum", PackageManager.YUM),
    ("apk", PackageManager.APK),
]


@dataclass(frozen=True)
class PlatformContext:
    """Platform facts consumed by the firewall layer."""
    os_id: Optional[str]
    package_manager: Optional[PackageManager]
    persistence: PersistenceMethod
    iptables: str = "iptables"
    ip6tables: str = "ip6tables"

    def __str__(self) -> str:
        pm = self.package_manager.value if self.package_manager else "unknown"
        return f"{self.os_id or 'unknown'} (package manager: {pm})"


def read_os_id(path: Path = OS_RELEASE_PATH) -> Optional[str]:
    """Read the ID field from os-release.

    Returns:
        Lower-case distribution id, or None if unavailable
    """
    try:
        content = path.read_text()
    except OSError:
        return None

    for line in content.splitlines():
        line = line.strip()
        if line.startswith("ID="):
            value = line.split("=", 1)[1].strip().strip('"').strip("'")
            return value.lower() or None
    return None


def detect_package_manager() -> Optional[PackageManager]:
    """Detect the system package manager.

    Returns:
        PackageManager, or None if none of apt-get/dnf/yum/apk is present
    """
    for binary, manager in _PACKAGE_MANAGER_BINARIES:
        if shutil.which(binary):
            return manager
    return None


def resolve_persistence(
    requested: str,
    package_manager: Optional[PackageManager],
) -> PersistenceMethod:
    """Pick the persistence method.

    An explicit choice is honoured as-is. In auto mode the order is:
    netfilter-persistent if installed, the RHEL iptables service on
    dnf/yum hosts, the OpenRC iptables script on apk hosts, else none.
    """
    if requested != "auto":
        return PersistenceMethod(requested)

    if shutil.which("netfilter-persistent"):
        return PersistenceMethod.NETFILTER_PERSISTENT
    if package_manager in (PackageManager.DNF, PackageManager.YUM) and shutil.which("service"):
        return PersistenceMethod.SERVICE
    if package_manager == PackageManager.APK and OPENRC_IPTABLES_SCRIPT.exists():
        return PersistenceMethod.OPENRC
    return PersistenceMethod.NONE


def detect_platform(firewall: Optional[FirewallConfig] = None) -> PlatformContext:
    """Detect the platform context for this invocation.

    Args:
        firewall: Firewall settings (binary overrides, persistence choice)

    Returns:
        PlatformContext
    """
    firewall = firewall or FirewallConfig()
    package_manager = detect_package_manager()

    return PlatformContext(
        os_id=read_os_id(),
        package_manager=package_manager,
        persistence=resolve_persistence(firewall.persistence, package_manager),
        iptables=firewall.iptables,
        ip6tables=firewall.ip6tables,
    )
