"""
Address normalization.

Every address is stored and compared in one canonical form: lowercase hex
without the "0x" prefix. The RPC form adds the prefix back for node calls.
"""

import re

_HEX_RE = re.compile(r"^[0-9a-f]+$")


def normalize_address(address: str) -> str:
    """Return the canonical (lowercase, unprefixed) form of an address."""
    if address is None:
        raise ValueError("address is required")
    addr = address.strip().lower()
    if addr.startswith("0x"):
        addr = addr[2:]
    if not addr or not _HEX_RE.match(addr):
        raise ValueError(f"Invalid address: {address!r}")
    return addr


def to_rpc_address(address: str) -> str:
    """Return the 0x-prefixed form expected by node RPC calls."""
    return "0x" + normalize_address(address)


def is_valid_address(address: str, length: int = None) -> bool:
    """True if address normalizes cleanly (and has the given hex length)."""
    try:
        addr = normalize_address(address)
    except ValueError:
        return False
    return length is None or len(addr) == length
