"""Captive-portal server that moves a headless device onto the operator's Wi-Fi."""

from .version import APP_VERSION

__all__ = ["APP_VERSION"]
