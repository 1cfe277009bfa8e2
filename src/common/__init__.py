"""
Common utilities for sheet-placeholder-sync.

Modules:
- config: environment + SSM settings
- identity: refresh-token exchange against the Microsoft identity platform
- graph: Microsoft Graph client (drive delta, workbook ranges)
- delta: delta feed pagination into changed workbook ids + resume cursor
- grid: sparse patch construction from a used-range value grid
- resolver: placeholder → value resolution
- alpha_vantage: quote lookups used by the resolver
"""

__all__ = [
    "alpha_vantage",
    "config",
    "delta",
    "errors",
    "graph",
    "grid",
    "identity",
    "rate_limiter",
    "resolver",
]
