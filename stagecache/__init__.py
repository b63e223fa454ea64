"""stagecache - content-addressed build cache for multi-stage image builds.

This package plans and executes stage graphs with per-step caching,
persistent mount caches and independent per-platform cache namespaces.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
