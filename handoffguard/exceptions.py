"""Exception hierarchy for handoffguard.

The text pipeline never raises on malformed input and the vault never raises
past its boundary. These exceptions are for configuration problems and for
callers that prefer an exception over checking ``result.safety``.
"""

from typing import List, Optional


class HandoffError(Exception):
    """Base exception for handoffguard errors."""
    pass


class ConfigurationError(HandoffError):
    """Invalid configuration."""
    pass


class LexiconError(HandoffError):
    """Lexicon data file missing or malformed."""
    pass


class VaultError(HandoffError):
    """Vault misuse (bad key length, unusable storage backend)."""
    pass


class RefinePatchError(HandoffError):
    """An untrusted refine patch did not match the expected shape."""
    pass


class UnsafePayloadError(HandoffError):
    """Residual PHI was found in a payload about to leave the pipeline."""

    def __init__(self, message: str, issues: Optional[List] = None):
        super().__init__(message)
        self.issues = list(issues or [])


class PolicyBlockedError(HandoffError):
    """The privacy policy gate does not allow the local pipeline to run."""
    pass


class DatasetError(HandoffError):
    """Evaluation dataset missing or malformed."""
    pass
