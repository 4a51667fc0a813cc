"""Exception hierarchy for the session and credential layer.

Configuration problems are raised synchronously and never retried. Signing
failures carry the underlying error. Transport errors are not wrapped here;
they reach callers unmodified through the session's ERROR event.
"""

from __future__ import annotations


class CloudIotError(Exception):
    """Base exception for all errors raised by this package."""


class InvalidConfiguration(CloudIotError, ValueError):
    """A required option is missing or malformed.

    Raised when:
    - An identity field is not a non-empty string
    - The private key is not PEM text or bytes
    - The token algorithm, token lifecycle or a QoS value is out of range

    Attributes:
        field: Name of the offending option
        reason: Human-readable description of the problem

    """

    def __init__(self, field: str, reason: str) -> None:
        """Initialize configuration error with the field and reason."""
        self.field: str = field
        self.reason: str = reason
        super().__init__(f"Invalid {field}: {reason}")


class InvalidArgument(InvalidConfiguration):
    """A publish call was given an unsupported QoS or subfolder."""


class CredentialIssuanceFailed(CloudIotError):
    """The signing primitive rejected the key, algorithm or claims.

    Fatal when raised while a session is being constructed. During automatic
    renewal it is logged and the previous token stays in place.

    Attributes:
        algorithm: Token algorithm that was requested
        cause: Exception raised by the signing library

    """

    def __init__(self, algorithm: str, cause: BaseException) -> None:
        """Initialize issuance error with the algorithm and underlying cause."""
        self.algorithm: str = algorithm
        self.cause: BaseException = cause
        super().__init__(f"Failed to sign {algorithm} token: {cause}")
