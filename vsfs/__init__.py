"""Create, journal and validate VSFS disk images."""

__version__ = "0.1.0"

__all__ = ["layout", "mkfs", "journal", "validator"]