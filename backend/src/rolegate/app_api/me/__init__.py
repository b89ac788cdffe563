"""Self-service routes for the current user."""
