"""Declare and provision the pgAdmin cluster topology."""

__version__ = "0.3.0"
