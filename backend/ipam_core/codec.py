"""
Address codec: textual IPv4/IPv6 addresses to and from fixed-width integers.

Every address the engine stores or compares goes through here first, so two
spellings of the same IPv6 address always end up under the same key.
"""
import re
from enum import Enum
from typing import Optional, Tuple

from .exceptions import InvalidAddressError, InvalidCIDRError

V4_MAX = 0xFFFFFFFF
V6_MAX = (1 << 128) - 1

_OCTET = re.compile(r"[0-9]{1,3}")
_HEXTET = re.compile(r"[0-9a-fA-F]{1,4}")
_PREFIX = re.compile(r"[0-9]{1,3}")


class IPFamily(str, Enum):
    V4 = "IPv4"
    V6 = "IPv6"


def family_width(family: IPFamily) -> int:
    """Bit width of an address in the given family."""
    return 128 if IPFamily(family) == IPFamily.V6 else 32


def detect_family(text: str) -> IPFamily:
    """Any colon means IPv6, everything else is treated as IPv4."""
    if ":" in text:
        return IPFamily.V6
    return IPFamily.V4


# ============================================================================
# IPv4
# ============================================================================

def parse_v4(text: str) -> int:
    """Parse dotted-quad text into a 32-bit integer."""
    if not isinstance(text, str):
        raise InvalidAddressError(text)

    parts = text.split(".")
    if len(parts) != 4:
        raise InvalidAddressError(text, {"reason": "expected four octets"})

    value = 0
    for part in parts:
        if not _OCTET.fullmatch(part):
            raise InvalidAddressError(text, {"reason": f"bad octet '{part}'"})
        octet = int(part)
        if octet > 255:
            raise InvalidAddressError(text, {"reason": f"octet {octet} out of range"})
        value = (value << 8) | octet
    return value


def format_v4(value: int) -> str:
    if not 0 <= value <= V4_MAX:
        raise InvalidAddressError(value, {"reason": "not a 32-bit value"})
    return ".".join(str((value >> shift) & 0xFF) for shift in (24, 16, 8, 0))


# ============================================================================
# IPv6
# ============================================================================

def _v6_groups(text: str) -> list:
    """Split IPv6 text into exactly eight hextet strings, expanding '::'."""
    if not isinstance(text, str) or not text:
        raise InvalidAddressError(text)

    if text.count("::") > 1:
        raise InvalidAddressError(text, {"reason": "'::' may appear only once"})

    if "::" in text:
        head, tail = text.split("::")
        left = head.split(":") if head else []
        right = tail.split(":") if tail else []
        missing = 8 - len(left) - len(right)
        # '::' stands for at least one zero group
        if missing < 1:
            raise InvalidAddressError(text, {"reason": "too many groups"})
        groups = left + ["0"] * missing + right
    else:
        groups = text.split(":")

    if len(groups) != 8:
        raise InvalidAddressError(text, {"reason": f"expected 8 groups, got {len(groups)}"})

    for group in groups:
        if not _HEXTET.fullmatch(group):
            raise InvalidAddressError(text, {"reason": f"bad group '{group}'"})
    return groups


def parse_v6(text: str) -> int:
    """Parse any legal IPv6 spelling into a 128-bit integer."""
    value = 0
    for group in _v6_groups(text):
        value = (value << 16) | int(group, 16)
    return value


def expand_v6(text: str) -> str:
    """Full eight-group, zero-padded form, e.g. 2001:0db8:0000:...:0001."""
    return ":".join(group.zfill(4).lower() for group in _v6_groups(text))


def format_v6(value: int) -> str:
    """
    Canonical compressed form.

    The longest run of two or more zero groups collapses to '::'; when two runs
    are equally long the leftmost one wins.
    """
    if not 0 <= value <= V6_MAX:
        raise InvalidAddressError(value, {"reason": "not a 128-bit value"})

    groups = [(value >> (16 * (7 - i))) & 0xFFFF for i in range(8)]

    best_start, best_len = -1, 0
    run_start, run_len = -1, 0
    for i, group in enumerate(groups):
        if group == 0:
            if run_len == 0:
                run_start = i
            run_len += 1
            if run_len > best_len:
                best_start, best_len = run_start, run_len
        else:
            run_len = 0

    hextets = [format(group, "x") for group in groups]
    if best_len < 2:
        return ":".join(hextets)

    head = ":".join(hextets[:best_start])
    tail = ":".join(hextets[best_start + best_len:])
    return f"{head}::{tail}"


# ============================================================================
# Family-agnostic helpers
# ============================================================================

def parse_address(text: str, family: Optional[IPFamily] = None) -> Tuple[IPFamily, int]:
    """
    Parse an address of either family.

    When `family` is given the text is parsed as that family; otherwise the
    family is detected from the text.
    """
    if not isinstance(text, str):
        raise InvalidAddressError(text)
    family = IPFamily(family) if family else detect_family(text)
    if family == IPFamily.V6:
        return family, parse_v6(text)
    return family, parse_v4(text)


def format_address(value: int, family: IPFamily) -> str:
    if IPFamily(family) == IPFamily.V6:
        return format_v6(value)
    return format_v4(value)


def canonicalize(text: str) -> str:
    """Re-render an address in its single canonical spelling."""
    family, value = parse_address(text)
    return format_address(value, family)


def address_key(value: int) -> str:
    """
    Fixed-width sort key for an address integer.

    32 hex digits cover the full IPv6 space, so comparing keys as strings
    orders addresses numerically within a family.
    """
    return format(value, "032x")


def is_valid_v4(text: str) -> bool:
    try:
        parse_v4(text)
    except InvalidAddressError:
        return False
    return True


def is_valid_v6(text: str) -> bool:
    try:
        parse_v6(text)
    except InvalidAddressError:
        return False
    return True


def is_valid(text: str) -> bool:
    if not isinstance(text, str):
        return False
    if detect_family(text) == IPFamily.V6:
        return is_valid_v6(text)
    return is_valid_v4(text)


def split_cidr(cidr: str) -> Tuple[IPFamily, int, int]:
    """Split 'address/prefix' into (family, address value, prefix length)."""
    if not isinstance(cidr, str) or cidr.count("/") != 1:
        raise InvalidCIDRError(cidr)

    address, prefix_text = cidr.split("/")
    if not _PREFIX.fullmatch(prefix_text):
        raise InvalidCIDRError(cidr, {"reason": "prefix must be a decimal number"})

    try:
        family, value = parse_address(address)
    except InvalidAddressError as e:
        raise InvalidCIDRError(cidr, e.details) from e

    prefix = int(prefix_text)
    if prefix > family_width(family):
        raise InvalidCIDRError(cidr, {"reason": f"prefix {prefix} too long for {family.value}"})
    return family, value, prefix


def is_valid_cidr(cidr: str) -> bool:
    try:
        split_cidr(cidr)
    except InvalidCIDRError:
        return False
    return True
