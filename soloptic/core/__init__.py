"""Shared configuration, logging, errors and report schemas."""
