"""CLI command groups for brain-config."""
