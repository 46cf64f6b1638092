"""Quay - resource hierarchy and storage consistency engine for shared upload links."""

__version__ = "0.1.0"
