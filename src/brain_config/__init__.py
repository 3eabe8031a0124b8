"""brain-config: configuration lifecycle core for the brain memory middleware."""

__version__ = "0.1.0"
