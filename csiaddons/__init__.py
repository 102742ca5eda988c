"""Reconcilers and helpers for CSI add-on storage resources on an in-memory cluster client."""

__version__ = "0.1.0"