"""CLI entry point for genhub.cli module.

Enables execution via: python -m genhub.cli
"""

from genhub.cli.reconcile import main

if __name__ == "__main__":
    main()
