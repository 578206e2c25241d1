"""MusicService operator: reconciles a streaming service and its database tier."""

__version__ = "0.1.0"
