"""Caching reverse proxy for crates.io-style package registries."""

__version__ = "0.1.0"
