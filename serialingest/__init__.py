"""Serial-to-HTTP ingest bridge package."""

__version__ = "1.0.0"
