"""speedwatch: connection-quality coordinator for remote probe devices."""

__version__ = "1.0.0"
