"""Runnable wrapper for ``python -m chatsync``."""

from chatsync.server import main

if __name__ == "__main__":
    raise SystemExit(main())
