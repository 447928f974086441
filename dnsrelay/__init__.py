"""Caching, DNS64, fastest-address and upstream-exchange building blocks for a forwarding DNS proxy."""

__version__ = "0.1.0"