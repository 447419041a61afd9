"""busrelay: re-expose a D-Bus service from one bus on another."""

__version__ = "0.1.0"
