"""CLI entry point for pixelforge.cli module.

Enables execution via: python -m pixelforge.cli (runs scheduler sweeps)
"""

from pixelforge.cli.sweep import main

if __name__ == "__main__":
    main()
