"""rolegate: role-based access control engine and admin API."""
