"""Password-gated HTTP file sharing."""

__version__ = "1.0.0"
