"""
Entry point for running the package as a module.

Usage:
    python -m posture_scanner /path/to/scan
    python -m posture_scanner --site https://example.com
    python -m posture_scanner --serve
"""

from .cli import main

if __name__ == '__main__':
    main()
