"""
Port Hopping CLI - UDP port-hopping NAT redirect manager.

Installs and removes the iptables/ip6tables REDIRECT rules that fan a
UDP port range into a single proxy listen port, and keeps them across
reboots.
"""

__version__ = "1.0.0"
__author__ = "Port Hopping Team"
