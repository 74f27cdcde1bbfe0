"""Postback relay: payment gateway postbacks to subscriber deposit notifications."""

__version__ = "1.0.0"

__all__: list[str] = ["__version__"]
