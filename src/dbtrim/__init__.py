"""
dbtrim - Export small, referentially-consistent copies of large databases.

A CLI tool that dumps a database with per-table subsetting rules, keeping
related rows together across tables and tenants, useful for local
development and staging copies of production sites.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
