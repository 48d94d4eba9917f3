"""Declarative control loop for a city of long-running agent sessions."""

__version__ = "0.1.0"
