"""Device identity, authentication and presence."""
