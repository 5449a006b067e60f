"""HTTP API for the identity graph."""
