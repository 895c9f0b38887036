"""datasync: offline-first dataset synchronization client."""

__version__ = "0.1.0"
