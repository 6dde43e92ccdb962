"""
CLI entrypoint.

Usage:
    python -m novabuild build --mode=production
"""
import sys

from novabuild.cli import main


if __name__ == "__main__":
    sys.exit(main())
