#!/usr/bin/env python3
"""Main entry point for the AI factory orchestrator."""
import sys

from aifactory.cli import main

if __name__ == "__main__":
    sys.exit(main())
