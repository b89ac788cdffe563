"""Admin routes for permission definitions."""
