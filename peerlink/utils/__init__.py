"""Utility modules shared across PeerLink."""
