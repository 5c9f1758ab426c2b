"""
patchpilot — policy-gated ticket-to-pull-request automation core.

File: src/patchpilot/__init__.py

Purpose
- Package root. Exposes the package version and keeps the import surface small.

Functional requirements
- Must not have side effects at import time (no config loading, no logging init).
"""

__version__ = "0.4.0"

__all__ = ["__version__"]
