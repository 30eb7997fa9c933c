"""Versioned artifact store: binary objects plus versioned metadata documents."""
__version__ = "1.0.0"
