"""TLS client certificate lifecycle management."""

__version__ = "0.1.0"
