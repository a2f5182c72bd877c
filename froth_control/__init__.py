"""Command/acknowledgment client for Froth coffee kiosks."""

__version__ = "0.1.0"
