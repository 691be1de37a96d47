"""Fly Share: local-network file sharing with live file lists."""

__version__ = "1.0.0"
