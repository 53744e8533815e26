"""chatrelay: context-window truncation and streaming completion relay."""

__version__ = "0.1.0"
