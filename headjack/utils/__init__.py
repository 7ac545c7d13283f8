"""Shared helpers: markdown rendering, logging setup and room tags."""
