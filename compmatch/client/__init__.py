"""Client helpers for the HTTP API."""
