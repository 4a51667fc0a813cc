"""Token lifecycle: decides on each session loss whether to mint a new token.

There is no timer. The clock is sampled only when the session reports a
disconnect (or when renewal is requested explicitly). A token is replaced once
more than half of its lifecycle has elapsed, so a flapping network reuses the
current token while a reconnect after expiry always carries a fresh one.
"""

from __future__ import annotations

import dataclasses
import threading
import time
from collections.abc import Callable

from cloud_iot_mqtt.credentials import coerce_algorithm, issue_credential, normalize_private_key
from cloud_iot_mqtt.exceptions import CredentialIssuanceFailed
from cloud_iot_mqtt.logging_abstraction import get_logger
from cloud_iot_mqtt.structs import Credential, CredentialState, SessionEvent, TokenAlgorithm

__all__ = ["CredentialManager", "Notifier"]

logger = get_logger(__name__)

Notifier = Callable[..., None]


def _discard(_event: SessionEvent, *_args: object) -> None:
    return None


class CredentialManager:
    """Owns the session credential and its renewal policy.

    All access to the credential goes through ``_lock``. Notifications are sent
    after the lock is released, so a handler may call ``replace_private_key``
    (for instance from a DISCONNECT handler) and have the following renewal use
    the new key.
    """

    lp: str = "credentials:"

    def __init__(
        self,
        algorithm: TokenAlgorithm | str,
        private_key: str | bytes,
        audience: str,
        lifecycle: int,
        *,
        clock: Callable[[], float] = time.time,
        notify: Notifier | None = None,
    ) -> None:
        """Issue the initial token.

        Args:
            algorithm: RS256 or ES256
            private_key: PEM key matching ``algorithm``
            audience: Value of the ``aud`` claim (the project id)
            lifecycle: Token validity in seconds
            clock: Source of the current epoch time
            notify: Called as ``notify(event, *args)`` for DISCONNECT and TOKEN_RENEWAL

        Raises:
            InvalidConfiguration: If the algorithm or key are malformed
            CredentialIssuanceFailed: If the initial token cannot be signed

        """
        self.audience: str = audience
        self._clock: Callable[[], float] = clock
        self._notify: Notifier = notify or _discard
        self._lock: threading.Lock = threading.Lock()
        self._credential: Credential = issue_credential(algorithm, private_key, audience, lifecycle, self._now())
        logger.info(
            "%s Initial %s token issued",
            self.lp,
            self._credential.algorithm.value,
            extra={"expires_at": self._credential.expires_at, "lifecycle": lifecycle},
        )

    def _now(self) -> int:
        return int(self._clock())

    @property
    def token(self) -> str:
        with self._lock:
            return self._credential.token

    @property
    def expires_at(self) -> int:
        with self._lock:
            return self._credential.expires_at

    @property
    def lifecycle(self) -> int:
        with self._lock:
            return self._credential.lifecycle

    @property
    def algorithm(self) -> TokenAlgorithm:
        with self._lock:
            return self._credential.algorithm

    @property
    def private_key(self) -> str:
        with self._lock:
            return self._credential.private_key

    def snapshot(self) -> Credential:
        """Copy of the current credential, safe to inspect without the lock."""
        with self._lock:
            return dataclasses.replace(self._credential)

    def state(self, now: int | None = None) -> CredentialState:
        now = self._now() if now is None else now
        with self._lock:
            remaining = self._credential.remaining(now)
            lifecycle = self._credential.lifecycle
            issued_at = self._credential.issued_at
        if remaining < 0:
            return CredentialState.EXPIRED
        if 2 * remaining < lifecycle:
            return CredentialState.STALE_HALF
        if now <= issued_at:
            return CredentialState.FRESH
        return CredentialState.VALID

    def _reissue(self, now: int) -> Credential:
        """Sign a new token with the current key/algorithm and store it."""
        with self._lock:
            current = self._credential
            renewed = issue_credential(current.algorithm, current.private_key, self.audience, current.lifecycle, now)
            self._credential = renewed
            return dataclasses.replace(renewed)

    def on_session_lost(self, now: int | None = None) -> Credential | None:
        """Evaluate the token after the transport reported a disconnect.

        Always notifies DISCONNECT(token_expired). Renews when less than half
        of the lifecycle remains and then notifies TOKEN_RENEWAL(expires_at).
        A signing failure here is logged, not raised: the old token stays in
        place and the broker's rejection of it is what the caller sees.

        Returns:
            The new credential if one was issued, else None

        """
        lp = f"{self.lp}session_lost:"
        now = self._now() if now is None else now
        with self._lock:
            remaining = self._credential.remaining(now)
            lifecycle = self._credential.lifecycle
        token_expired = remaining < 0
        # Integer form of remaining < lifecycle / 2
        needs_renewal = 2 * remaining < lifecycle

        logger.info(
            "%s Session lost",
            lp,
            extra={"remaining_s": remaining, "token_expired": token_expired, "renew": needs_renewal},
        )
        self._notify(SessionEvent.DISCONNECT, token_expired)

        if not needs_renewal:
            logger.debug("%s At least half of the lifecycle remains, reusing the token", lp)
            return None

        try:
            renewed = self._reissue(now)
        except CredentialIssuanceFailed:
            logger.exception("%s Token renewal failed, keeping the current token", lp)
            return None

        logger.info("%s Token renewed", lp, extra={"expires_at": renewed.expires_at})
        self._notify(SessionEvent.TOKEN_RENEWAL, renewed.expires_at)
        return renewed

    def renew(self, now: int | None = None) -> Credential:
        """Reissue the token unconditionally.

        Raises:
            CredentialIssuanceFailed: If signing fails; the current token is kept

        """
        now = self._now() if now is None else now
        renewed = self._reissue(now)
        logger.info("%s Token renewed on request", self.lp, extra={"expires_at": renewed.expires_at})
        self._notify(SessionEvent.TOKEN_RENEWAL, renewed.expires_at)
        return renewed

    def replace_private_key(self, new_key: str | bytes, algorithm: TokenAlgorithm | str | None = None) -> None:
        """Store a new signing key for the next renewal.

        The active token is left untouched. When ``algorithm`` is given it also
        replaces the algorithm used for the next renewal. No check is made that
        key and algorithm belong together; a mismatch shows up as a failed
        renewal.

        Raises:
            InvalidConfiguration: If ``new_key`` is not PEM or ``algorithm`` is unsupported

        """
        pem = normalize_private_key(new_key, field="newPrivateKey")
        new_algorithm = coerce_algorithm(algorithm) if algorithm is not None else None
        with self._lock:
            self._credential.private_key = pem
            if new_algorithm is not None:
                self._credential.algorithm = new_algorithm
        logger.info(
            "%s Private key replaced, takes effect at next renewal",
            self.lp,
            extra={"algorithm": new_algorithm.value if new_algorithm else None},
        )
