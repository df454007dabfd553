"""pixelgate - HTTP image processing gateway."""

__version__ = "1.0.0"
