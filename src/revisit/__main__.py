"""
Entry point for running revisit as a module.

Usage:
    python -m revisit add notes/tcp.md
    python -m revisit review -n 5
    python -m revisit --help
"""
from .cli import main

if __name__ == "__main__":
    main()
