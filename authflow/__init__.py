"""Challenge-gated authentication flow."""

__version__ = "0.1.0"
