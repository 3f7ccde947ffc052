"""
Common utilities for boxvault.

Modules:
- config: StorageSettings model and environment loading
- paths: platform data directory resolution
- diagnostics: best-effort logging helper
"""

__all__ = [
    "config",
    "diagnostics",
    "paths",
]
