"""IFI worker: turns accepted implementation jobs into pull requests."""

__version__ = "0.1.0"
