"""Tests for the pairing state machine."""

import asyncio
import json
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from qrpair.credential_store import Credential
from qrpair.errors import StorageError, UnauthorizedError
from qrpair.pairing_client import ExchangeResult, PairingClient
from qrpair.responses import ExchangeError
from qrpair.state_machine import (
    EXPIRED_MESSAGE,
    VALID_TRANSITIONS,
    AuthState,
    FailureReason,
    PairingStateMachine,
)
from qrpair.ticket import REJECTION_MESSAGES, RejectionReason

VALIDATE_PATH = "/api/devices/validate"
VERIFY_PATH = "/api/mobile/verify"


@pytest_asyncio.fixture
async def pairing_client():
    async with PairingClient("Test Phone", request_timeout=5.0) as client:
        yield client


@pytest.fixture
def machine(store, gateway, pairing_client):
    return PairingStateMachine(store, gateway, pairing_client)


@pytest.fixture
def states(machine):
    """Record every state the machine enters."""
    seen = []
    machine.on_state_change(lambda state, _machine: seen.append(state))
    return seen


def grant(api_server, device_id="dev-1", token="rt-1"):
    api_server.respond_json(
        "POST", VALIDATE_PATH, 200, {"deviceId": device_id, "refreshToken": token}
    )


async def pair(machine, api_server, make_payload):
    grant(api_server)
    machine.start()
    await machine.scanned(make_payload(api_url=api_server.url))
    assert machine.state == AuthState.AUTHENTICATED


class TestTransitions:
    def test_initial_state(self, machine):
        assert machine.state == AuthState.IDLE
        assert machine.credential is None
        assert machine.failure is None

    def test_every_state_can_reach_idle(self):
        for state, targets in VALID_TRANSITIONS.items():
            if state != AuthState.IDLE:
                assert AuthState.IDLE in targets

    def test_start_only_from_idle(self, machine):
        machine.start()

        with pytest.raises(ValueError):
            machine.start()

    def test_retry_requires_failed(self, machine):
        with pytest.raises(ValueError):
            machine.retry()

    def test_cancel_requires_scanning(self, machine):
        with pytest.raises(ValueError):
            machine.cancel_scanning()

    def test_cancel_scanning(self, machine, states):
        machine.start()
        machine.cancel_scanning()

        assert states == [AuthState.SCANNING, AuthState.IDLE]

    def test_reset_from_idle_is_noop(self, machine, states):
        machine.reset()

        assert machine.state == AuthState.IDLE
        assert states == []

    @pytest.mark.asyncio
    async def test_verify_requires_authenticated(self, machine):
        with pytest.raises(ValueError):
            await machine.verify()

    def test_start_without_pairing_client(self, store, gateway):
        machine = PairingStateMachine(store, gateway)

        with pytest.raises(RuntimeError):
            machine.start()

    @pytest.mark.asyncio
    async def test_invalid_transition_raises(self, machine):
        with pytest.raises(ValueError, match="Invalid transition"):
            machine._transition_to(AuthState.AUTHENTICATING)


class TestSuccessfulPairing:
    """A valid, unexpired ticket exchanged for credentials."""

    @pytest.mark.asyncio
    async def test_happy_path(self, machine, states, store, api_server, make_payload):
        grant(api_server)

        machine.start()
        accepted = await machine.scanned(make_payload(api_url=api_server.url))

        assert accepted
        assert states == [
            AuthState.SCANNING,
            AuthState.VALIDATING_TICKET,
            AuthState.AUTHENTICATING,
            AuthState.AUTHENTICATED,
        ]
        expected = Credential("dev-1", "rt-1", api_server.url)
        assert machine.credential == expected
        assert await store.get_auth_data() == expected

    @pytest.mark.asyncio
    async def test_exchange_request(self, machine, api_server, make_payload):
        grant(api_server)

        machine.start()
        await machine.scanned(make_payload(api_url=api_server.url))

        [request] = api_server.requests
        assert request.path == VALIDATE_PATH
        assert request.body == {
            "pairingCode": "ABC123",
            "deviceSessionId": "sess-1",
            "deviceName": "Test Phone",
        }

    @pytest.mark.asyncio
    async def test_ticket_without_expiry(self, machine, api_server, make_payload):
        grant(api_server)

        machine.start()
        await machine.scanned(make_payload(api_url=api_server.url, expires_in=None))

        assert machine.state == AuthState.AUTHENTICATED

    @pytest.mark.asyncio
    async def test_gateway_uses_new_credential(
        self, machine, gateway, store, api_server, make_payload
    ):
        await store.save_auth_data(Credential("old", "rt-old", api_server.url))
        await gateway.get_client()

        await pair(machine, api_server, make_payload)

        client = await gateway.get_client()
        assert client.headers["X-Device-ID"] == "dev-1"
        assert client.headers["Authorization"] == "Bearer rt-1"

    @pytest.mark.asyncio
    async def test_restore_after_restart(self, machine, store, gateway, api_server, make_payload):
        await pair(machine, api_server, make_payload)

        restarted = PairingStateMachine(store, gateway)

        assert await restarted.restore() == AuthState.AUTHENTICATED
        assert restarted.credential == machine.credential


class TestScanHandling:
    """Scanner input handling."""

    @pytest.mark.asyncio
    async def test_malformed_payload_loops_back(self, machine, states, api_server):
        warnings = []
        machine.on_scan_warning(warnings.append)
        machine.start()

        accepted = await machine.scanned("hello world")

        assert accepted
        assert machine.state == AuthState.SCANNING
        assert not machine.has_scanned
        assert states[-2:] == [AuthState.VALIDATING_TICKET, AuthState.SCANNING]
        assert warnings == [REJECTION_MESSAGES[RejectionReason.MALFORMED_PAYLOAD]]
        assert api_server.requests == []

    @pytest.mark.asyncio
    async def test_missing_fields_warning(self, machine, api_server):
        warnings = []
        machine.on_scan_warning(warnings.append)
        machine.start()

        await machine.scanned(json.dumps({"pairingCode": "ABC123"}))

        assert machine.state == AuthState.SCANNING
        assert warnings == [REJECTION_MESSAGES[RejectionReason.MISSING_FIELDS]]

    @pytest.mark.asyncio
    async def test_valid_scan_after_malformed(self, machine, api_server, make_payload):
        grant(api_server)
        machine.start()

        await machine.scanned("{not json")
        await machine.scanned(make_payload(api_url=api_server.url))

        assert machine.state == AuthState.AUTHENTICATED

    @pytest.mark.asyncio
    async def test_scan_ignored_when_idle(self, machine, make_payload):
        assert not await machine.scanned(make_payload())
        assert machine.state == AuthState.IDLE

    @pytest.mark.asyncio
    async def test_second_scan_ignored_while_in_flight(self, store, gateway, make_payload):
        release = asyncio.Event()

        async def slow_exchange(ticket):
            await release.wait()
            return ExchangeResult(credential=Credential("dev-1", "rt-1", ticket.api_url))

        exchanger = MagicMock()
        exchanger.exchange = AsyncMock(side_effect=slow_exchange)
        machine = PairingStateMachine(store, gateway, exchanger)
        machine.start()

        first = asyncio.ensure_future(machine.scanned(make_payload()))
        await asyncio.sleep(0)
        assert machine.state == AuthState.AUTHENTICATING
        assert not await machine.scanned(make_payload())

        release.set()
        await first

        exchanger.exchange.assert_awaited_once()
        assert machine.state == AuthState.AUTHENTICATED


class TestExpiredTicket:
    """An expired ticket fails without any network call."""

    @pytest.mark.asyncio
    async def test_expired(self, machine, states, store, api_server, make_payload):
        grant(api_server)
        machine.start()

        await machine.scanned(
            make_payload(api_url=api_server.url, expires_in=timedelta(seconds=-5))
        )

        assert machine.state == AuthState.FAILED
        assert machine.failure.reason == FailureReason.EXPIRED
        assert machine.failure.message == EXPIRED_MESSAGE
        assert api_server.requests == []
        assert await store.get_auth_data() is None
        assert AuthState.AUTHENTICATING not in states

    @pytest.mark.asyncio
    async def test_retry_after_failure(self, machine, api_server, make_payload):
        grant(api_server)
        machine.start()
        await machine.scanned(make_payload(expires_in=timedelta(minutes=-1)))

        machine.retry()

        assert machine.state == AuthState.SCANNING
        assert machine.failure is None
        assert machine.ticket is None
        await machine.scanned(make_payload(api_url=api_server.url))
        assert machine.state == AuthState.AUTHENTICATED

    @pytest.mark.asyncio
    async def test_reset_after_failure(self, machine, make_payload):
        machine.start()
        await machine.scanned(make_payload(expires_in=timedelta(minutes=-1)))

        machine.reset()

        assert machine.state == AuthState.IDLE
        assert machine.failure is None
        assert machine.ticket is None


class TestExchangeFailures:
    """Server failures end in FAILED and store nothing."""

    @pytest.mark.asyncio
    async def test_invalid_response_body(self, machine, store, api_server, make_payload):
        body = "<html>Bad Gateway</html>"
        api_server.respond_text("POST", VALIDATE_PATH, 502, body)
        machine.start()

        await machine.scanned(make_payload(api_url=api_server.url))

        assert machine.state == AuthState.FAILED
        assert machine.failure.reason == FailureReason.INVALID_RESPONSE_BODY
        assert machine.failure.detail == body
        assert machine.failure.cause == ExchangeError.INVALID_RESPONSE_BODY
        assert await store.get_auth_data() is None

    @pytest.mark.asyncio
    async def test_rejected(self, machine, store, api_server, make_payload):
        api_server.respond_json("POST", VALIDATE_PATH, 400, {"error": "Code already used"})
        machine.start()

        await machine.scanned(make_payload(api_url=api_server.url))

        assert machine.failure.reason == FailureReason.REJECTED
        assert machine.failure.message == "Code already used"
        assert await store.get_auth_data() is None

    @pytest.mark.asyncio
    async def test_incomplete_credential(self, machine, store, api_server, make_payload):
        api_server.respond_json("POST", VALIDATE_PATH, 200, {"deviceId": "dev-1"})
        machine.start()

        await machine.scanned(make_payload(api_url=api_server.url))

        assert machine.failure.reason == FailureReason.INCOMPLETE_CREDENTIAL
        assert await store.get_auth_data() is None

    @pytest.mark.asyncio
    async def test_network_failure(self, machine, store, api_server, make_payload):
        url = api_server.url
        await api_server.close()
        machine.start()

        await machine.scanned(make_payload(api_url=url))

        assert machine.failure.reason == FailureReason.NETWORK_FAILURE
        assert await store.get_auth_data() is None

    @pytest.mark.asyncio
    async def test_storage_failure(self, machine, store, api_server, make_payload, monkeypatch):
        grant(api_server)
        monkeypatch.setattr(
            store, "save_auth_data", AsyncMock(side_effect=StorageError("disk full"))
        )
        machine.start()

        await machine.scanned(make_payload(api_url=api_server.url))

        assert machine.state == AuthState.FAILED
        assert machine.failure.reason == FailureReason.STORAGE_FAILURE
        assert "disk full" in machine.failure.message
        assert machine.credential is None

    @pytest.mark.asyncio
    async def test_rotated_token_storage_failure(
        self, machine, store, api_server, make_payload, monkeypatch
    ):
        """A rotated token that cannot be written fails verify instead of raising."""
        await pair(machine, api_server, make_payload)
        api_server.respond_json("POST", VERIFY_PATH, 200, {"refreshToken": "rt-2"})

        def disk_full(credential):
            raise OSError("disk full")

        monkeypatch.setattr(store, "_write", disk_full)

        result = await machine.verify()

        assert result.error == ExchangeError.STORAGE_FAILURE
        assert machine.state == AuthState.FAILED
        assert machine.failure.reason == FailureReason.STORAGE_FAILURE
        assert "disk full" in machine.failure.message
        assert machine.credential is not None
        monkeypatch.undo()
        assert (await store.get_auth_data()).refresh_token == "rt-1"

        machine.reset()
        assert machine.state == AuthState.IDLE


class TestStaleResults:
    """Results arriving after the user navigated away are dropped."""

    @pytest.mark.asyncio
    async def test_exchange_result_after_reset_not_stored(self, store, gateway, make_payload):
        release = asyncio.Event()

        async def slow_exchange(ticket):
            await release.wait()
            return ExchangeResult(credential=Credential("dev-1", "rt-1", ticket.api_url))

        exchanger = MagicMock()
        exchanger.exchange = AsyncMock(side_effect=slow_exchange)
        machine = PairingStateMachine(store, gateway, exchanger)
        machine.start()

        task = asyncio.ensure_future(machine.scanned(make_payload()))
        await asyncio.sleep(0)
        machine.reset()
        release.set()
        await task

        assert machine.state == AuthState.IDLE
        assert machine.credential is None
        assert await store.get_auth_data() is None

    @pytest.mark.asyncio
    async def test_result_after_reset_and_rescan_is_dropped(self, store, gateway, make_payload):
        first_release = asyncio.Event()
        calls = []

        async def exchange(ticket):
            calls.append(ticket)
            if len(calls) == 1:
                await first_release.wait()
                return ExchangeResult(credential=Credential("stale", "rt-0", ticket.api_url))
            return ExchangeResult(credential=Credential("fresh", "rt-1", ticket.api_url))

        exchanger = MagicMock()
        exchanger.exchange = AsyncMock(side_effect=exchange)
        machine = PairingStateMachine(store, gateway, exchanger)

        machine.start()
        stale = asyncio.ensure_future(machine.scanned(make_payload()))
        await asyncio.sleep(0)
        machine.reset()
        machine.start()
        await machine.scanned(make_payload())
        first_release.set()
        await stale

        assert machine.credential.device_id == "fresh"
        assert (await store.get_auth_data()).device_id == "fresh"


class TestVerify:
    """Verifying a stored credential."""

    @pytest.mark.asyncio
    async def test_verify_success(self, machine, states, api_server, make_payload):
        await pair(machine, api_server, make_payload)
        api_server.respond_json("POST", VERIFY_PATH, 200, {"valid": True})

        result = await machine.verify()

        assert result.ok
        assert machine.state == AuthState.AUTHENTICATED
        assert states[-2:] == [AuthState.AUTHENTICATING, AuthState.AUTHENTICATED]

    @pytest.mark.asyncio
    async def test_verify_rotation(self, machine, store, api_server, make_payload):
        await pair(machine, api_server, make_payload)
        api_server.respond_json("POST", VERIFY_PATH, 200, {"refreshToken": "rt-2"})

        result = await machine.verify()

        assert result.rotated
        assert machine.credential.refresh_token == "rt-2"
        assert machine.credential.device_id == "dev-1"
        assert (await store.get_auth_data()).refresh_token == "rt-2"

    @pytest.mark.asyncio
    async def test_verify_failure_keeps_credential(self, machine, store, api_server, make_payload):
        await pair(machine, api_server, make_payload)
        api_server.respond_json("POST", VERIFY_PATH, 400, {"error": "Token expired"})

        await machine.verify()

        assert machine.state == AuthState.FAILED
        assert machine.failure.reason == FailureReason.VERIFY_FAILED
        assert machine.failure.message == "Token expired"
        assert machine.credential is not None
        assert await store.get_auth_data() is not None

    @pytest.mark.asyncio
    async def test_verify_unauthorized_logs_out(self, machine, store, gateway, api_server, make_payload):
        await pair(machine, api_server, make_payload)
        api_server.respond_json("POST", VERIFY_PATH, 401, {"error": "revoked"})

        await machine.verify()

        assert machine.state == AuthState.FAILED
        assert machine.failure.reason == FailureReason.UNAUTHORIZED
        assert machine.credential is None
        assert await store.get_auth_data() is None
        assert not gateway.has_client


class TestLogout:
    """Explicit and forced logout."""

    @pytest.mark.asyncio
    async def test_logout(self, machine, store, api_server, make_payload):
        await pair(machine, api_server, make_payload)

        await machine.logout()

        assert machine.state == AuthState.IDLE
        assert machine.credential is None
        assert await store.get_auth_data() is None

    @pytest.mark.asyncio
    async def test_logout_from_idle(self, machine, states):
        await machine.logout()

        assert machine.state == AuthState.IDLE
        assert states == []

    @pytest.mark.asyncio
    async def test_server_revocation_returns_to_idle(
        self, machine, gateway, store, api_server, make_payload
    ):
        """A 401 on any authenticated request ends the session."""
        await pair(machine, api_server, make_payload)
        api_server.respond_json("GET", "/api/profile", 401, {"error": "revoked"})

        with pytest.raises(UnauthorizedError):
            await gateway.request("GET", "/api/profile")

        assert machine.state == AuthState.IDLE
        assert machine.credential is None
        assert await store.get_auth_data() is None
