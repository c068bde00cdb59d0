"""Library payments service: epayment.kz gateway integration for the library backend."""

__version__ = "0.1.0"
