"""Baton: leased workstream ownership with interrupt-driven dispatch."""

__version__ = "0.1.0"
