"""Spotify now-playing → MQTT bridge for an LED visualizer."""

__version__ = "1.0.0"
