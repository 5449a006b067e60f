"""Background maintenance jobs."""
