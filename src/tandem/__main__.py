"""Tandem CLI entry point."""

from __future__ import annotations

from tandem.cli import app

if __name__ == "__main__":
    app()
