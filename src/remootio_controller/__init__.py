"""Remootio Controller - local websocket control for Remootio gate/garage devices."""

__version__ = "0.2.0"
