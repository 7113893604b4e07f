"""Version information for headless-usb-builder."""

__version__ = "1.0.0"
