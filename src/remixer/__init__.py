"""Remixer - component-based image generation queue with fork/replace remixing."""

__version__ = "0.1.0"
