"""Source address checks for inbound payment notifications."""

import ipaddress
from typing import Iterable, Optional, Union

from vpn_billing.logging_config import get_logger

logger = get_logger(__name__)

IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


def parse_networks(cidrs: Iterable[str]) -> list[IPNetwork]:
    """Parse CIDR strings, skipping invalid entries.

    Args:
        cidrs: CIDR notations (e.g., "185.71.76.0/27", "2a02:5180::/32")

    Returns:
        List of parsed networks
    """
    networks: list[IPNetwork] = []
    for cidr in cidrs:
        try:
            networks.append(ipaddress.ip_network(cidr.strip(), strict=False))
        except ValueError:
            logger.warning("invalid_cidr_skipped", cidr=cidr)
    return networks


def is_allowed_ip(ip: Optional[str], networks: Iterable[IPNetwork]) -> bool:
    """Check whether an address falls inside any allowed network.

    Args:
        ip: Client address as text
        networks: Parsed allowed networks

    Returns:
        True if the address parses and belongs to one of the networks
    """
    if not ip:
        return False
    try:
        address = ipaddress.ip_address(ip.strip())
    except ValueError:
        return False

    for network in networks:
        if address.version == network.version and address in network:
            return True
    return False
