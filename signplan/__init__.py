"""
Signing plan generation for build artifacts.

This package decides which binaries and containers produced by a build must be
signed, and with which certificate, and emits a declarative plan for a
downstream signing executor.
"""

__version__ = "0.1.0"
