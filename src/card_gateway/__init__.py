"""Card tokenization and payment brokering service."""

__version__ = "0.1.0"
