"""
CLI Module for Safe Upgrade

Provides the safe-upgrade command:
- check / upgrade / force / rollback
- verify-provenance, generate-hashes, sign-provenance, keygen

Usage:
    python -m safe_upgrade.cli.upgradectl check
    safe-upgrade rollback
"""

from .upgradectl import build_parser, main as upgradectl_main

__all__ = [
    'build_parser',
    'upgradectl_main',
]
