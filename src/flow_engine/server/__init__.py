"""REST server for the flow engine."""

from flow_engine.server.app import create_app

__all__ = ["create_app"]
