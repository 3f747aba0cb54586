"""
Entry point for running clip2gif as a module: python -m clip2gif

This allows the package to be executed directly:
    python -m clip2gif clip.mp4
    python -m clip2gif --help
"""

import sys

from clip2gif.cli import main

if __name__ == "__main__":
    sys.exit(main())
