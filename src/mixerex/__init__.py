"""Mixerex - custodial mixing order service."""

__version__ = "0.1.0"
