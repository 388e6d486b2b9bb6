"""Workflow control plane: feature lifecycle, knowledge and evaluation tracking."""

__version__ = "0.1.0"
