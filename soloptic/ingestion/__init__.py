"""Compiler integrations."""
