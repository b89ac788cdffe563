"""Admin and self-service HTTP API for rolegate."""
