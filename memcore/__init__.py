"""
memcore package initialization.

Memory update and maintenance engine for a personal assistant memory store.
"""

# Setup logging configuration on package import
from .utils.logging_config import setup_logging

setup_logging()
