"""Tunnel-Canvas: typed topology graphs for tunnel-relay control planes."""

__version__ = "0.1.0"
