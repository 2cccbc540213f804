"""Claw Market - install extensions and skills from a marketplace catalog."""

__version__ = "0.1.0"

from claw_market.config import Config
from claw_market.main import main

__all__ = ["Config", "main", "__version__"]
