"""
PDF Image Service package.

This module provides a FastAPI application that turns uploaded images into a
PDF and rasterizes uploaded PDFs into page images.
"""

__all__ = ["__version__"]

__version__ = "0.1.0"
