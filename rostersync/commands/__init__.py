"""Command implementations for the rostersync CLI."""
