"""HomePost device: captures microphone audio and streams it to a hub."""

__version__ = "1.0.0"
