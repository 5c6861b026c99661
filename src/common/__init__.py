"""
Common utilities for TerraDB.

Modules:
- config: environment / SSM backed settings
- auth: HTTP basic auth check
- client: HTTP client for the TerraDB API
- logging_cfg: JSON logging setup
"""

__all__ = [
    "auth",
    "client",
    "config",
    "logging_cfg",
]
