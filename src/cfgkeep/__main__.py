"""
Entry point for running cfgkeep as a module.

Usage:
    python -m cfgkeep [command] [options]
"""

from cfgkeep.cli import main

if __name__ == "__main__":
    main()
