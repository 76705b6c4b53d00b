"""Core infrastructure: configuration, logging and the history store."""
