"""
Entry point for running crm_sync as a module.

Usage:
    python -m crm_sync --help
    python -m crm_sync auth --owner alice
    python -m crm_sync sync --owner alice --dry-run
"""

from crm_sync.cli import cli

if __name__ == "__main__":
    cli()
