"""Admin routes for users."""
