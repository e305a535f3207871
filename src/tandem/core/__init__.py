"""Orchestration core: selection, streaming, context and the round loop."""
