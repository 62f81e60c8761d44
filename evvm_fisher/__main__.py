"""
Entry point for running the fisher as a module.

Usage:
    python -m evvm_fisher
"""

from evvm_fisher.cli import main

if __name__ == "__main__":
    main()
