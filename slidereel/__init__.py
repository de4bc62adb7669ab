"""Turn slide lists into narrated tutorial videos."""

__version__ = "0.1.0"
