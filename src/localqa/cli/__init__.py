"""
Command line interface for localqa.
"""

from .main import build_parser, main, run

__all__ = ["build_parser", "main", "run"]
