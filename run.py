#!/usr/bin/env python3
"""
run.py — Launch obs-switcher without installing.

Usage (from the obs-switcher directory):
    python run.py serve
    python run.py serve --obs-password mypassword
    python run.py init-config
    python run.py check
    python run.py switch "Scene 2"
    python run.py mute mic
"""
import sys
from pathlib import Path

# Ensure the project root is on the path
sys.path.insert(0, str(Path(__file__).parent))

from obs_switcher.main import app

if __name__ == "__main__":
    app()
