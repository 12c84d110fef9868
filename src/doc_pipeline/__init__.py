"""
Document Pipeline package.

Accepts Word documents over HTTP, converts them to PDF and extracts their
document properties on background queue workers, and serves status,
metadata and downloads while the work completes.
"""

__all__ = ["__version__"]

__version__ = "0.1.0"
