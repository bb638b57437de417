from __future__ import annotations

import random
from ipaddress import AddressValueError, IPv6Address
from typing import Iterable, List, Optional


def random_ipv6(prefix: str, subnet: str, rng: Optional[random.Random] = None) -> str:
    """
    prefix:subnet + 64 random host bits, as four zero-padded lowercase hextets.
    No collision check: re-adding an existing /128 is idempotent on the interface.
    """
    b = (rng or random).getrandbits(64)
    return (
        f"{prefix}:{subnet}:"
        f"{(b >> 48) & 0xFFFF:04x}:"
        f"{(b >> 32) & 0xFFFF:04x}:"
        f"{(b >> 16) & 0xFFFF:04x}:"
        f"{b & 0xFFFF:04x}"
    )


def is_ipv6(value: object) -> bool:
    if not isinstance(value, str):
        return False
    try:
        IPv6Address(value)
    except (AddressValueError, ValueError):
        return False
    return True


def same_address(a: str, b: str) -> bool:
    # ip/ifconfig print compressed forms, random_ipv6 does not
    try:
        return IPv6Address(a.split("%", 1)[0]) == IPv6Address(b.split("%", 1)[0])
    except (AddressValueError, ValueError):
        return False


def find_ipv6_tokens(text: str) -> List[str]:
    """Все токены вывода, которые парсятся как IPv6 (scope-суффикс %xx отрезаем)."""
    out: List[str] = []
    for tok in text.replace(",", " ").split():
        cand = tok.split("%", 1)[0].split("/", 1)[0]
        if ":" in cand and is_ipv6(cand):
            out.append(cand)
    return out


def contains_address(candidates: Iterable[str], address: str) -> bool:
    return any(same_address(c, address) for c in candidates)
