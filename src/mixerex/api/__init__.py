"""HTTP API for the mixer."""
