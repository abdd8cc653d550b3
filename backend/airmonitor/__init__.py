"""Offline-capable client for the GIOŚ air quality API."""

__version__ = "1.0.0"
