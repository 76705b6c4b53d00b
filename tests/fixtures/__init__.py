"""Test fixtures for router-history."""
