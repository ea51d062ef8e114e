"""Bundled flow definitions (``<id>.flow.json``)."""
