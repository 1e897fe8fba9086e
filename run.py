#!/usr/bin/env python3
"""
Entry point for the Bitunix position ladder engine.

Run from a checkout without installing: ``python run.py run``.
"""
import os
import sys

sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from position_ladder.config.dotenv_loader import load_dotenv_files

# No-op in prod
load_dotenv_files()

from position_ladder.cli import app

if __name__ == "__main__":
    app()
