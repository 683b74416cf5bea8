"""Membership operations backend for a paid Discord community."""

__version__ = "0.1.0"
