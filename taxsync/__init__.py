"""Transaction ingestion and synchronization engine for the sales-tax dashboard."""

__version__ = "0.1.0"
