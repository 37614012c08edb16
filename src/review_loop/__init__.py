"""Iterative reviewer/fixer loop over coding agent CLIs."""

__version__ = "0.1.0"
