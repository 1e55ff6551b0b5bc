"""Main entry point for running genforge as a module.

Usage:
    python -m genforge --help
    python -m genforge generate "Build a todo app" --mock
    python -m genforge fix ./my-app --check "npx tsc --noEmit"
"""

from __future__ import annotations

from .cli import app

if __name__ == "__main__":
    app()
