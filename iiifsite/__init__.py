"""Build/dev orchestrator and UI asset pipeline for IIIF static sites."""

__version__ = "0.3.0"
