"""
Entry point for running chainstate as a module.

Usage:
    python -m chainstate stats
    python -m chainstate recover session-1234 --strategy progressive
    python -m chainstate --help
"""

from chainstate.app.main import main

if __name__ == "__main__":
    main()
