"""Console and logging helpers."""
