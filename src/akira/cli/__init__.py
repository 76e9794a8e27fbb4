"""
AKIRA CLI - Operator commands for the access gateway

Provides commands for:
- Storage initialization
- Bootstrapping the first administrator
- Audit ledger verification and export
- Master key re-encryption
"""

from akira.cli.main import cli

__all__ = ["cli"]
