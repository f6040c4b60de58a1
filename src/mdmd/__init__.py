"""mdmd: markdown note collection with per-directory symlink projections."""

__version__ = "0.3.0"
