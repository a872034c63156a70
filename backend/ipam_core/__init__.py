"""
IPAM Core - IPv4/IPv6 address allocation engine.
"""
__version__ = "1.1.0"
