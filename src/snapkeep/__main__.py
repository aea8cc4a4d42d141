"""Allow running as ``python -m snapkeep``"""

from snapkeep.cli import cli

if __name__ == "__main__":
    cli()
