"""Idempotent provisioner for an Azure hub-and-spoke network."""

__version__ = "0.1.0"
