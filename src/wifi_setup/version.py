"""Version information for the setup portal."""

APP_VERSION = "1.0.0"

__all__ = ["APP_VERSION"]
