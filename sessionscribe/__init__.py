"""Session audio capture and AI-assisted clinical note generation."""

__version__ = "0.4.0"
