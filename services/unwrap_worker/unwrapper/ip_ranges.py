from __future__ import annotations

from ipaddress import IPv4Address, IPv4Network, IPv6Address, IPv6Network, ip_address, ip_network


_BLOCKED: tuple[IPv4Network | IPv6Network, ...] = (
    ip_network("10.0.0.0/8"),
    ip_network("172.16.0.0/12"),
    ip_network("192.168.0.0/16"),
    ip_network("127.0.0.0/8"),
    ip_network("169.254.0.0/16"),  # link-local, cloud metadata
    ip_network("0.0.0.0/8"),
    ip_network("::1/128"),
    ip_network("fc00::/7"),  # unique local
    ip_network("fe80::/10"),  # link-local
    ip_network("::/128"),
)

BLOCKED_NETWORKS = _BLOCKED


def ip_in_network(ip: str | IPv4Address | IPv6Address, cidr: str | IPv4Network | IPv6Network) -> bool:
    """Return True if ``ip`` falls inside ``cidr``.

    Containment is decided by masking the integer form of the address with the
    network's prefix length. Addresses are only compared against networks of the
    same family.
    """
    addr = ip_address(ip) if isinstance(ip, str) else ip
    net = ip_network(cidr, strict=False) if isinstance(cidr, str) else cidr
    if addr.version != net.version:
        return False
    bits = addr.max_prefixlen
    mask = ((1 << net.prefixlen) - 1) << (bits - net.prefixlen)
    return (int(addr) & mask) == (int(net.network_address) & mask)


def blocked_network_for(ip: str) -> IPv4Network | IPv6Network | None:
    """Return the disallowed network containing ``ip`` or None.

    IPv4-mapped IPv6 addresses (``::ffff:a.b.c.d``) are checked as IPv4.
    Raises ValueError if ``ip`` is not an IP address.
    """
    addr = ip_address(ip.strip("[]"))
    if isinstance(addr, IPv6Address) and addr.ipv4_mapped is not None:
        addr = addr.ipv4_mapped
    for net in _BLOCKED:
        if ip_in_network(addr, net):
            return net
    return None


def is_blocked_ip(ip: str) -> bool:
    return blocked_network_for(ip) is not None
