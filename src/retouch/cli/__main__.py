"""CLI entry point for retouch.cli module.

Enables execution via: python -m retouch.cli
"""

from retouch.cli.scavenge import main

if __name__ == "__main__":
    main()
