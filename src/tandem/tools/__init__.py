"""Capability registry, built-in capabilities and execution."""
