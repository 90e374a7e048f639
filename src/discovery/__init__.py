"""Progressive geospatial discovery of nearby service providers."""

__version__ = "0.1.0"
