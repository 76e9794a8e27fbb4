"""
AKIRA CLI Entry Point

Run with: python -m akira
"""

from akira.cli.main import cli

if __name__ == "__main__":
    cli()
