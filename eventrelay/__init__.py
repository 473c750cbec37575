"""Event delivery and signed webhook fan-out."""

__version__ = "0.1.0"
