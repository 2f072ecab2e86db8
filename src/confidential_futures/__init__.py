"""Confidential futures settlement coordinator and gateway worker."""

__version__ = "0.1.0"
