"""Adapters around the host tools that build an encrypted image."""
