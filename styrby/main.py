#!/usr/bin/env python3
"""
Main entry point for the Typer-based Styrby CLI.

This delegates to the UI layer in styrby.ui.cli to keep the
console script mapping stable.
"""

from styrby.ui.cli import run as styrby


if __name__ == "__main__":
    styrby()
