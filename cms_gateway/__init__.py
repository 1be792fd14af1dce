"""Edge gateway for a Decap CMS deployment with a bridged OAuth helper."""

__version__ = "1.0.0"
