"""chatlink - resilient chat transport and bounded message window."""

__version__ = "0.1.0"
