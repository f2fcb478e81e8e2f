"""Command-line tools for EntMan."""

from .integrity_cli import IntegrityCLI, main

__all__ = ["IntegrityCLI", "main"]
