"""Host and guest helpers for running containers inside microVMs."""

__version__ = "0.1.0"