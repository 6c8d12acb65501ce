"""Vesper CLI entry point."""

from vesper.cli import app

if __name__ == "__main__":
    app()
