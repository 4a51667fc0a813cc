"""
Unit tests for lifecycle module.

Tests the half-life renewal policy applied on session loss, explicit renewal,
private key replacement and notification ordering, all against a fake clock.
"""

from unittest.mock import MagicMock, call, patch

import jwt
import pytest

from cloud_iot_mqtt.exceptions import CredentialIssuanceFailed, InvalidConfiguration
from cloud_iot_mqtt.lifecycle import CredentialManager
from cloud_iot_mqtt.structs import CredentialState, SessionEvent, TokenAlgorithm

LIFECYCLE = 3600


@pytest.fixture
def notify() -> MagicMock:
    return MagicMock()


@pytest.fixture
def manager(rsa_private_pem, fake_clock, notify) -> CredentialManager:
    return CredentialManager(
        "RS256",
        rsa_private_pem,
        audience="proj",
        lifecycle=LIFECYCLE,
        clock=fake_clock,
        notify=notify,
    )


class TestInitialToken:
    """Tests for the token issued at construction"""

    def test_initial_expiry(self, manager, fake_clock):
        assert manager.expires_at == int(fake_clock.now) + LIFECYCLE
        assert manager.lifecycle == LIFECYCLE
        assert manager.algorithm is TokenAlgorithm.RS256

    def test_initial_token_verifies(self, manager, rsa_public_pem):
        claims = jwt.decode(
            manager.token,
            rsa_public_pem,
            algorithms=["RS256"],
            audience="proj",
            options={"verify_exp": False},
        )

        assert claims == {"aud": "proj", "exp": manager.expires_at}

    def test_no_notification_at_construction(self, manager, notify):
        notify.assert_not_called()

    def test_construction_fails_on_mismatched_key(self, ec_private_pem, fake_clock):
        with pytest.raises(CredentialIssuanceFailed):
            _ = CredentialManager("RS256", ec_private_pem, audience="proj", lifecycle=60, clock=fake_clock)

    def test_snapshot_is_a_copy(self, manager):
        snapshot = manager.snapshot()
        snapshot.token = "tampered"

        assert manager.token != "tampered"


class TestCredentialState:
    """Tests for state()"""

    def test_fresh_at_issue_time(self, manager, fake_clock):
        assert manager.state() is CredentialState.FRESH

    def test_valid_before_half_life(self, manager, fake_clock):
        fake_clock.advance(LIFECYCLE // 2)

        assert manager.state() is CredentialState.VALID

    def test_stale_after_half_life(self, manager, fake_clock):
        fake_clock.advance(LIFECYCLE // 2 + 1)

        assert manager.state() is CredentialState.STALE_HALF

    def test_expired(self, manager, fake_clock):
        fake_clock.advance(LIFECYCLE + 1)

        assert manager.state() is CredentialState.EXPIRED


class TestOnSessionLost:
    """Tests for the renewal decision made on every disconnect"""

    def test_flap_before_half_life_keeps_token(self, manager, fake_clock, notify):
        """Test that a disconnect early in the lifecycle reuses the token"""
        token = manager.token
        expires_at = manager.expires_at
        fake_clock.advance(10)

        result = manager.on_session_lost()

        assert result is None
        assert manager.token == token
        assert manager.expires_at == expires_at
        notify.assert_called_once_with(SessionEvent.DISCONNECT, False)

    def test_exactly_half_remaining_keeps_token(self, manager, fake_clock, notify):
        """Test that 2 * remaining == lifecycle is not yet a renewal"""
        expires_at = manager.expires_at
        fake_clock.advance(LIFECYCLE // 2)

        assert manager.on_session_lost() is None
        assert manager.expires_at == expires_at

    def test_past_half_life_renews(self, manager, fake_clock, notify):
        """Test renewal once less than half the lifecycle remains"""
        old_token = manager.token
        fake_clock.advance(LIFECYCLE // 2 + 1)
        now = int(fake_clock.now)

        renewed = manager.on_session_lost()

        assert renewed is not None
        assert renewed.expires_at == now + LIFECYCLE
        assert manager.expires_at == now + LIFECYCLE
        assert manager.token != old_token
        assert notify.call_args_list == [
            call(SessionEvent.DISCONNECT, False),
            call(SessionEvent.TOKEN_RENEWAL, now + LIFECYCLE),
        ]

    def test_expired_token_renews_and_reports_expiry(self, manager, fake_clock, notify):
        """Test that a reconnect after expiry reports token_expired and renews"""
        fake_clock.advance(LIFECYCLE + 30)
        now = int(fake_clock.now)

        renewed = manager.on_session_lost()

        assert renewed is not None
        assert renewed.expires_at == now + LIFECYCLE
        assert notify.call_args_list == [
            call(SessionEvent.DISCONNECT, True),
            call(SessionEvent.TOKEN_RENEWAL, now + LIFECYCLE),
        ]

    def test_at_expiry_instant_not_reported_expired(self, manager, fake_clock, notify):
        """Test that remaining == 0 still counts as unexpired"""
        fake_clock.advance(LIFECYCLE)

        _ = manager.on_session_lost()

        assert notify.call_args_list[0] == call(SessionEvent.DISCONNECT, False)

    def test_explicit_now_overrides_clock(self, manager, fake_clock, notify):
        now = int(fake_clock.now) + LIFECYCLE - 1

        renewed = manager.on_session_lost(now)

        assert renewed is not None
        assert renewed.expires_at == now + LIFECYCLE

    def test_renewal_failure_keeps_old_token(self, manager, fake_clock, notify):
        """Test that a signing failure during automatic renewal is logged, not raised"""
        token = manager.token
        fake_clock.advance(LIFECYCLE)

        with patch(
            "cloud_iot_mqtt.lifecycle.issue_credential",
            side_effect=CredentialIssuanceFailed("RS256", ValueError("boom")),
        ):
            result = manager.on_session_lost()

        assert result is None
        assert manager.token == token
        notify.assert_called_once_with(SessionEvent.DISCONNECT, False)

    def test_lifecycle_of_one_second(self, rsa_private_pem, fake_clock, notify):
        """Test the smallest lifecycle: any elapsed second triggers renewal"""
        mgr = CredentialManager("RS256", rsa_private_pem, "proj", 1, clock=fake_clock, notify=notify)
        fake_clock.advance(1)

        renewed = mgr.on_session_lost()

        assert renewed is not None
        assert renewed.expires_at == int(fake_clock.now) + 1


class TestRenew:
    """Tests for explicit renew()"""

    def test_renew_reissues_and_notifies(self, manager, fake_clock, notify):
        fake_clock.advance(5)
        now = int(fake_clock.now)

        renewed = manager.renew()

        assert renewed.expires_at == now + LIFECYCLE
        notify.assert_called_once_with(SessionEvent.TOKEN_RENEWAL, now + LIFECYCLE)

    def test_renew_raises_on_failure(self, manager):
        token = manager.token

        with (
            patch(
                "cloud_iot_mqtt.lifecycle.issue_credential",
                side_effect=CredentialIssuanceFailed("RS256", ValueError("boom")),
            ),
            pytest.raises(CredentialIssuanceFailed),
        ):
            _ = manager.renew()

        assert manager.token == token


class TestReplacePrivateKey:
    """Tests for replace_private_key"""

    def test_invalid_key_raises_and_keeps_current(self, manager, rsa_private_pem):
        with pytest.raises(InvalidConfiguration) as exc_info:
            manager.replace_private_key("not a pem")

        assert exc_info.value.field == "newPrivateKey"
        assert manager.private_key == rsa_private_pem

    def test_active_token_untouched(self, manager, other_rsa_private_pem, notify):
        token = manager.token

        manager.replace_private_key(other_rsa_private_pem)

        assert manager.token == token
        assert manager.private_key == other_rsa_private_pem
        notify.assert_not_called()

    def test_next_renewal_uses_new_key(self, manager, fake_clock, other_rsa_private_pem, other_rsa_public_pem):
        """Test that the replacement key signs the next renewed token"""
        manager.replace_private_key(other_rsa_private_pem.encode())
        fake_clock.advance(LIFECYCLE)

        renewed = manager.on_session_lost()

        assert renewed is not None
        claims = jwt.decode(
            manager.token,
            other_rsa_public_pem,
            algorithms=["RS256"],
            audience="proj",
            options={"verify_exp": False},
        )
        assert claims["exp"] == renewed.expires_at

    def test_switch_algorithm(self, manager, fake_clock, ec_private_pem, ec_public_pem):
        """Test rotating to an ES256 key together with its algorithm"""
        manager.replace_private_key(ec_private_pem, algorithm="ES256")
        fake_clock.advance(LIFECYCLE)

        _ = manager.on_session_lost()

        assert manager.algorithm is TokenAlgorithm.ES256
        assert jwt.get_unverified_header(manager.token)["alg"] == "ES256"
        _ = jwt.decode(
            manager.token,
            ec_public_pem,
            algorithms=["ES256"],
            audience="proj",
            options={"verify_exp": False},
        )

    def test_mismatched_key_fails_at_renewal(self, manager, fake_clock, ec_private_pem):
        """Test that an EC key without an algorithm switch surfaces as a failed renewal"""
        token = manager.token
        manager.replace_private_key(ec_private_pem)
        fake_clock.advance(LIFECYCLE)

        assert manager.on_session_lost() is None
        assert manager.token == token

    def test_replace_from_disconnect_handler(self, rsa_private_pem, other_rsa_private_pem, other_rsa_public_pem, fake_clock):
        """Test that a key replaced inside the DISCONNECT notification signs the renewal"""
        holder: dict[str, CredentialManager] = {}

        def on_event(event, *_args):
            if event is SessionEvent.DISCONNECT:
                holder["mgr"].replace_private_key(other_rsa_private_pem)

        holder["mgr"] = mgr = CredentialManager(
            "RS256", rsa_private_pem, "proj", LIFECYCLE, clock=fake_clock, notify=on_event
        )
        fake_clock.advance(LIFECYCLE)

        _ = mgr.on_session_lost()

        _ = jwt.decode(
            mgr.token,
            other_rsa_public_pem,
            algorithms=["RS256"],
            audience="proj",
            options={"verify_exp": False},
        )

    def test_invalid_algorithm_raises(self, manager, other_rsa_private_pem, rsa_private_pem):
        with pytest.raises(InvalidConfiguration):
            manager.replace_private_key(other_rsa_private_pem, algorithm="HS256")

        assert manager.private_key == rsa_private_pem
