"""Admin routes for roles."""
