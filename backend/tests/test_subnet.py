"""Tests for subnet range and membership arithmetic."""
import ipaddress

import pytest

from ipam_core.codec import IPFamily, parse_v4
from ipam_core.exceptions import InvalidAddressError, InvalidPrefixError
from ipam_core.subnet import (
    USABLE_COUNT_CEILING,
    compute_range,
    contains,
    generate_cidr,
    in_usable_range,
    network_base,
    prefix_mask,
)


def test_range_v4_slash_24():
    rng = compute_range("192.168.1.0", 24, IPFamily.V4)
    assert rng.first == "192.168.1.1"
    assert rng.last == "192.168.1.254"
    assert rng.usable_count == 254
    assert not rng.saturated


@pytest.mark.parametrize("cidr", ["10.0.0.0/8", "172.16.0.0/12", "192.168.4.0/22", "10.1.2.0/30"])
def test_range_v4_matches_stdlib_hosts(cidr):
    network = ipaddress.ip_network(cidr)
    rng = compute_range(str(network.network_address), network.prefixlen)
    assert rng.usable_count == network.num_addresses - 2
    assert rng.first == str(network.network_address + 1)
    assert rng.last == str(network.broadcast_address - 1)


def test_range_v4_slash_31_is_empty():
    rng = compute_range("10.0.0.0", 31)
    assert rng.usable_count == 0
    assert rng.is_empty
    assert rng.first is None and rng.last is None


def test_range_v4_slash_32_is_single_host():
    rng = compute_range("10.0.0.7", 32)
    assert rng.first == rng.last == "10.0.0.7"
    assert rng.usable_count == 1


def test_range_clears_host_bits():
    assert compute_range("192.168.1.77", 24).first == "192.168.1.1"


def test_range_v6_saturates():
    rng = compute_range("2001:db8::", 64, IPFamily.V6)
    assert rng.usable_count == USABLE_COUNT_CEILING
    assert rng.saturated
    assert rng.first == "2001:db8::1"
    assert rng.last == "2001:db8::ffff:ffff:ffff:ffff"
    assert rng.span == 2 ** 64 - 1


def test_range_v6_small():
    rng = compute_range("2001:db8::", 120)
    assert rng.usable_count == 255
    assert rng.last == "2001:db8::ff"
    assert not rng.saturated


def test_range_v6_slash_128_is_single_address():
    rng = compute_range("2001:db8::5", 128)
    assert rng.first == rng.last == "2001:db8::5"
    assert rng.usable_count == 1


def test_range_whole_v6_space_does_not_overflow():
    rng = compute_range("::", 0)
    assert rng.usable_count == USABLE_COUNT_CEILING
    assert rng.last == "ffff:ffff:ffff:ffff:ffff:ffff:ffff:ffff"


@pytest.mark.parametrize("prefix, family", [(33, IPFamily.V4), (-1, IPFamily.V4), (129, IPFamily.V6)])
def test_invalid_prefix(prefix, family):
    network = "10.0.0.0" if family == IPFamily.V4 else "2001:db8::"
    with pytest.raises(InvalidPrefixError):
        compute_range(network, prefix, family)


def test_prefix_mask():
    assert prefix_mask(24, IPFamily.V4) == 0xFFFFFF00
    assert prefix_mask(0, IPFamily.V4) == 0
    assert prefix_mask(32, IPFamily.V4) == 0xFFFFFFFF
    assert prefix_mask(64, IPFamily.V6) == ((1 << 64) - 1) << 64


def test_network_base():
    assert network_base(parse_v4("192.168.1.77"), 24, IPFamily.V4) == parse_v4("192.168.1.0")


def test_contains_v4():
    assert contains("192.168.1.50", "192.168.1.0", 24, IPFamily.V4)
    assert not contains("192.168.2.1", "192.168.1.0", 24, IPFamily.V4)


def test_contains_v6():
    assert contains("2001:db8::dead:beef", "2001:db8::", 64)
    assert contains("2001:0db8:0000:0000:ffff::1", "2001:db8::", 64)
    assert not contains("2001:db9::1", "2001:db8::", 64)


def test_contains_other_family_is_false():
    assert not contains("::1", "10.0.0.0", 8)


def test_contains_rejects_malformed():
    with pytest.raises(InvalidAddressError):
        contains("10.0.0.999", "10.0.0.0", 8)


def test_in_usable_range_excludes_network_and_broadcast():
    rng = compute_range("192.168.1.0", 24)
    assert not in_usable_range(parse_v4("192.168.1.0"), rng)
    assert not in_usable_range(parse_v4("192.168.1.255"), rng)
    assert in_usable_range(parse_v4("192.168.1.1"), rng)


def test_generate_cidr():
    assert generate_cidr("192.168.1.0", 24) == "192.168.1.0/24"
    assert generate_cidr("2001:0db8:0000::", 48) == "2001:db8::/48"
