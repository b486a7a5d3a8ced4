"""meshlink - resilient client sessions for Meshtastic radios."""

__version__ = "1.0.0"
