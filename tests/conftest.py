"""Shared test fixtures."""

from pathlib import Path

# Test fixture config directory with synthetic accounts and rules
FIXTURE_CONFIG_DIR = Path(__file__).parent / "fixtures" / "config"
