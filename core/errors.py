from typing import List, Optional


class EchoSpeakError(Exception):
    """Base exception class for the EchoSpeak AI layer."""
    pass

class SettingsError(EchoSpeakError):
    """Raised when the settings file cannot be parsed or validated."""
    pass

class ProviderError(EchoSpeakError):
    """Base class for failures attributed to a single provider."""

    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(message)
        self.provider = provider

class ConfigurationError(ProviderError):
    """Raised when a provider is missing credentials or a required capability."""
    pass

class TransportError(ProviderError):
    """Raised when a backend call fails at the network or protocol level."""
    pass

class ParseError(ProviderError):
    """Raised when JSON-mode output cannot be parsed strictly."""

    def __init__(self, message: str, provider: Optional[str] = None, raw_text: str = ""):
        super().__init__(message, provider)
        self.raw_text = raw_text

class CircuitOpenError(ProviderError):
    """Raised in place of a call skipped because the provider's circuit is open."""
    pass

class ExhaustionError(EchoSpeakError):
    """Raised when every candidate provider failed for a dispatch."""

    def __init__(self, last_error: Optional[BaseException], attempted: List[str]):
        detail = f"{last_error}" if last_error else "no healthy provider available"
        super().__init__(f"All providers failed. Last: {detail}")
        self.last_error = last_error
        self.attempted = attempted
