"""Main entry point dispatcher for berth commands."""

import sys


def main():
    """Dispatch to appropriate submodule based on command."""
    print("Use 'python -m berth.agent' to run the agent")
    print("Use 'berthctl' for the command-line interface")
    sys.exit(1)


if __name__ == "__main__":
    main()
