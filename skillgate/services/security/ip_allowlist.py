from __future__ import annotations

import ipaddress


# Route prefixes guarded by the privileged address allow-list.
PRIVILEGED_PREFIXES = ("/v1/admin", "/v1/audit")


def parse_allowlist(entries: list[str]) -> list[ipaddress.IPv4Network | ipaddress.IPv6Network]:
    # Accept single addresses and CIDR ranges; invalid entries fail startup.
    return [ipaddress.ip_network(entry, strict=False) for entry in entries]


def is_privileged_path(path: str) -> bool:
    return any(path == prefix or path.startswith(prefix + "/") for prefix in PRIVILEGED_PREFIXES)


def address_allowed(
    address: str | None,
    allowlist: list[ipaddress.IPv4Network | ipaddress.IPv6Network],
) -> bool:
    # An empty allow-list admits every address.
    if not allowlist:
        return True
    if not address:
        return False
    try:
        parsed = ipaddress.ip_address(address)
    except ValueError:
        return False
    return any(parsed in network for network in allowlist)
