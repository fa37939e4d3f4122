"""Logging hooks for generation calls."""
