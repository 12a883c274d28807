"""SolOptic — line-level gas attribution and fuzz profiling for Solidity."""

__version__ = "1.0.0"
