"""command-stream entry point.

Supports: python -m command_stream
"""

from .app import main

if __name__ == "__main__":
    main()
