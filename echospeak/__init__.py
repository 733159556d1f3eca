"""EchoSpeak AI layer: provider routing, response caching and request coalescing."""

__version__ = "0.1.0"
