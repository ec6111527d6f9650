"""Completion service providers."""
