"""Core: domain errors and well-known D-Bus names."""
