"""Polish real-estate listing ingestion: harvest, enrich, geocode, registry prices, verification."""

__version__ = "0.1.0"
