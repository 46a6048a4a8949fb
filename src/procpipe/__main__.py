"""procpipe entry point.

Supports: python -m procpipe
"""

from .app import main

if __name__ == "__main__":
    main()
