"""
Subnet arithmetic: prefix masks, usable ranges and membership tests.
"""
from typing import Optional, Tuple

from sqlmodel import SQLModel

from .codec import IPFamily, family_width, format_address, parse_address
from .exceptions import InvalidPrefixError

# Largest usable count reported as an exact number. IPv6 subnets bigger than
# this report the ceiling with `saturated` set.
USABLE_COUNT_CEILING = 2 ** 53 - 1


class AddressRange(SQLModel):
    """Usable address range of a subnet. `first`/`last` are None when empty."""
    family: IPFamily
    first: Optional[str] = None
    last: Optional[str] = None
    first_value: Optional[int] = None
    last_value: Optional[int] = None
    usable_count: int = 0
    saturated: bool = False

    @property
    def is_empty(self) -> bool:
        return self.first_value is None

    @property
    def span(self) -> int:
        """True number of addresses in the range, never saturated."""
        if self.is_empty:
            return 0
        return self.last_value - self.first_value + 1


def validate_prefix(prefix: int, family: IPFamily) -> int:
    family = IPFamily(family)
    if isinstance(prefix, bool) or not isinstance(prefix, int):
        raise InvalidPrefixError(prefix, family.value)
    if not 0 <= prefix <= family_width(family):
        raise InvalidPrefixError(prefix, family.value)
    return prefix


def prefix_mask(prefix: int, family: IPFamily) -> int:
    """`prefix` leading one-bits followed by zero-bits, 32 or 128 bits wide."""
    width = family_width(family)
    validate_prefix(prefix, family)
    all_ones = (1 << width) - 1
    return all_ones ^ ((1 << (width - prefix)) - 1)


def network_base(value: int, prefix: int, family: IPFamily) -> int:
    """Clear the host bits of an address."""
    return value & prefix_mask(prefix, family)


def network_bounds(network: str, prefix: int, family: Optional[IPFamily] = None) -> Tuple[int, int]:
    """Lowest and highest value of the whole block, network and broadcast included."""
    family, value = parse_address(network, family)
    base = network_base(value, prefix, family)
    return base, base + (1 << (family_width(family) - prefix)) - 1


def compute_range(network: str, prefix: int, family: Optional[IPFamily] = None) -> AddressRange:
    """
    Derive the usable range of a subnet.

    IPv4 excludes the network and broadcast addresses. A /31 has no usable
    address and a /32 is the single host address itself. IPv6 only excludes
    the all-zero network address; a /128 is the single address itself. The
    reported count is capped at USABLE_COUNT_CEILING.
    """
    family, value = parse_address(network, family)
    validate_prefix(prefix, family)
    width = family_width(family)
    base = network_base(value, prefix, family)
    size = 1 << (width - prefix)

    if prefix == width:
        first, last = base, base
    elif family == IPFamily.V4:
        first, last = base + 1, base + size - 2
    else:
        first, last = base + 1, base + size - 1

    if last < first:
        return AddressRange(family=family, usable_count=0)

    count = last - first + 1
    saturated = count > USABLE_COUNT_CEILING
    return AddressRange(
        family=family,
        first=format_address(first, family),
        last=format_address(last, family),
        first_value=first,
        last_value=last,
        usable_count=USABLE_COUNT_CEILING if saturated else count,
        saturated=saturated,
    )


def contains(address: str, network: str, prefix: int, family: Optional[IPFamily] = None) -> bool:
    """
    (address & mask) == (network & mask).

    An address of the other family is never contained. Malformed text raises
    InvalidAddressError.
    """
    net_family, net_value = parse_address(network, family)
    addr_family, addr_value = parse_address(address)
    if addr_family != net_family:
        return False
    mask = prefix_mask(prefix, net_family)
    return (addr_value & mask) == (net_value & mask)


def in_usable_range(value: int, address_range: AddressRange) -> bool:
    if address_range.is_empty:
        return False
    return address_range.first_value <= value <= address_range.last_value


def generate_cidr(network: str, prefix: int, family: Optional[IPFamily] = None) -> str:
    """Canonical 'network/prefix' text, host bits cleared."""
    family, value = parse_address(network, family)
    validate_prefix(prefix, family)
    base = network_base(value, prefix, family)
    return f"{format_address(base, family)}/{prefix}"
