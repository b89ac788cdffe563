"""Shared building blocks used by the API projects."""
