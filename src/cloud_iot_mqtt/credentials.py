"""JWT issuance for MQTT bridge authentication.

The bridge accepts a JWT as the MQTT password. Its claim set is exactly
``{"aud": <project id>, "exp": <epoch seconds>}``; the bridge rejects tokens
that live longer than 24 hours.
"""

from __future__ import annotations

import jwt

from cloud_iot_mqtt.const import PEM_FOOTER_MARKER, PEM_HEADER_MARKER
from cloud_iot_mqtt.exceptions import CredentialIssuanceFailed, InvalidConfiguration
from cloud_iot_mqtt.instrumentation import timed
from cloud_iot_mqtt.logging_abstraction import get_logger
from cloud_iot_mqtt.structs import Credential, TokenAlgorithm

__all__ = [
    "coerce_algorithm",
    "issue_credential",
    "issue_token",
    "normalize_private_key",
]

logger = get_logger(__name__)


def normalize_private_key(private_key: object, field: str = "privateKey") -> str:
    """Return ``private_key`` as PEM text.

    Accepts ``str`` or bytes-like input. Only checks that the PEM header and
    footer markers are present; whether the body is a valid key of the right
    family is left to the signing library.

    Raises:
        InvalidConfiguration: If the value is not text/bytes or has no PEM markers

    """
    if isinstance(private_key, bytes | bytearray | memoryview):
        try:
            private_key = bytes(private_key).decode()
        except UnicodeDecodeError as e:
            raise InvalidConfiguration(field, "PEM bytes must be ASCII/UTF-8 text") from e
    elif not isinstance(private_key, str):
        raise InvalidConfiguration(field, f"expected PEM str or bytes, got {type(private_key).__name__}")

    if PEM_HEADER_MARKER not in private_key or PEM_FOOTER_MARKER not in private_key:
        raise InvalidConfiguration(field, "must be a PEM formatted private key")
    return private_key


def coerce_algorithm(algorithm: object, field: str = "tokenAlgorithm") -> TokenAlgorithm:
    """Map ``"RS256"`` / ``"ES256"`` (or the enum itself) to a TokenAlgorithm."""
    if isinstance(algorithm, TokenAlgorithm):
        return algorithm
    if isinstance(algorithm, str):
        try:
            return TokenAlgorithm(algorithm)
        except ValueError:
            pass
    choices = ", ".join(a.value for a in TokenAlgorithm)
    raise InvalidConfiguration(field, f"{algorithm!r} is not one of {choices}")


@timed("token_sign")
def issue_token(algorithm: TokenAlgorithm | str, private_key: str | bytes, audience: str, expires_at: int) -> str:
    """Sign a bridge JWT.

    Args:
        algorithm: RS256 or ES256; must match the key family
        private_key: PEM encoded RSA key (RS256) or P-256 EC key (ES256)
        audience: Project id the device belongs to
        expires_at: Expiry as integer epoch seconds

    Returns:
        The compact-serialized JWT

    Raises:
        InvalidConfiguration: If the algorithm is unsupported or the key is not PEM
        CredentialIssuanceFailed: If the signing library rejects the key or claims

    """
    alg = coerce_algorithm(algorithm)
    pem = normalize_private_key(private_key)
    claims = {"aud": audience, "exp": expires_at}
    try:
        return jwt.encode(claims, pem, algorithm=alg.value)
    except Exception as e:
        # Family mismatches surface as InvalidKeyError or TypeError depending on
        # the PyJWT/cryptography versions; a bad PEM body as ValueError.
        raise CredentialIssuanceFailed(alg.value, e) from e


def issue_credential(
    algorithm: TokenAlgorithm | str,
    private_key: str | bytes,
    audience: str,
    lifecycle: int,
    now: int,
) -> Credential:
    """Issue a token valid from ``now`` for ``lifecycle`` seconds."""
    alg = coerce_algorithm(algorithm)
    pem = normalize_private_key(private_key)
    expires_at = now + lifecycle
    token = issue_token(alg, pem, audience, expires_at)
    logger.debug(
        "Issued %s token",
        alg.value,
        extra={"audience": audience, "issued_at": now, "expires_at": expires_at},
    )
    return Credential(
        algorithm=alg,
        private_key=pem,
        token=token,
        issued_at=now,
        expires_at=expires_at,
        lifecycle=lifecycle,
    )
