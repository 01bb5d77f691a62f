"""Rental billing & revenue reconciliation service.

Having this file ensures the 'app' directory is recognized as a standard
Python package during test discovery and when installed in editable mode.
"""

__all__: list[str] = []
