"""
Test provider error classification, the live client transport, the
simulated provider and the executor dispatch table
"""

import asyncio
import hashlib
import json

import aiohttp
import jwt
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from caching.keyed_store import InMemoryKeyedStore
from models import CustodyStatus, OperationType
from services.custody_provider import SimulatedCustodyProvider, TaskStatusResult
from services.engine import CustodyEngine
from services.errors import ProviderError, ValidationError
from services.fireblocks_client import HttpCustodyProvider
from services.operation_executor import OPERATION_HANDLERS, OperationExecutor, encode_burn_call_data, to_base_units
from tests.fixtures import RecordingSleep, link_and_approve, mint_asset


class TestProviderErrorClassification:
    """Transient vs rate limited vs permanent"""

    def test_rate_limit_and_auth_statuses(self):
        for status in (401, 429):
            flags = ProviderError.classify_message("nope", status)
            assert flags == {"is_transient": True, "is_rate_limited": True}

    def test_server_errors_and_timeouts_are_transient(self):
        assert ProviderError.classify_message("Bad gateway", 502)["is_transient"] is True
        assert ProviderError.classify_message("ETIMEDOUT while reading")["is_transient"] is True
        assert ProviderError.classify_message("ECONNRESET")["is_rate_limited"] is False

    def test_client_errors_are_permanent(self):
        assert ProviderError.classify_message("Invalid vault", 400) == {
            "is_transient": False, "is_rate_limited": False,
        }

    def test_from_exception(self):
        timeout = ProviderError.from_exception(asyncio.TimeoutError())
        assert timeout.is_transient and not timeout.is_rate_limited

        response = aiohttp.ClientResponseError(None, (), status=429, message="Too Many Requests")
        limited = ProviderError.from_exception(response)
        assert limited.http_status == 429
        assert limited.is_rate_limited

        same = ProviderError("already wrapped")
        assert ProviderError.from_exception(same) is same

        plain = ProviderError.from_exception(ValueError("bad payload"))
        assert not plain.is_transient


class TestTaskStatusResult:
    """Normalizing provider payloads"""

    def test_from_payload_and_failure_reason(self):
        status = TaskStatusResult.from_payload({
            "id": "link-1",
            "status": "failed",
            "substatus": "TIMEOUT",
            "errorMessage": "deploy timed out",
            "tokenMetadata": {"contractAddress": "0xabc", "decimals": "6", "blockchain": "ETH_TEST5"},
        })

        assert status.is_failed and status.is_terminal
        assert status.contract_address == "0xabc"
        assert status.decimals == 6
        assert status.failure_reason() == "FAILED: TIMEOUT - deploy timed out"


class TestHttpCustodyProvider:
    """Request signing and transient retry"""

    @pytest.fixture
    def rsa_key(self):
        key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        private_pem = key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        ).decode("utf-8")
        public_pem = key.public_key().public_bytes(
            serialization.Encoding.PEM,
            serialization.PublicFormat.SubjectPublicKeyInfo,
        ).decode("utf-8")
        return private_pem, public_pem

    def test_signature_binds_path_and_body(self, rsa_key):
        private_pem, public_pem = rsa_key
        client = HttpCustodyProvider(api_key="key-1234567890", secret_key=private_pem, base_url="https://provider.test")
        body = json.dumps({"name": "vault"})

        token = client._sign("/v1/vault/accounts", body)
        claims = jwt.decode(token, public_pem, algorithms=["RS256"])

        assert claims["uri"] == "/v1/vault/accounts"
        assert claims["sub"] == "key-1234567890"
        assert claims["bodyHash"] == hashlib.sha256(body.encode("utf-8")).hexdigest()
        assert claims["exp"] - claims["iat"] == 55

    def test_missing_credentials_are_rejected(self):
        with pytest.raises(ProviderError):
            HttpCustodyProvider(api_key="", secret_key="", base_url="https://provider.test")

    @pytest.mark.asyncio
    async def test_transient_failures_are_retried_with_backoff(self):
        sleeper = RecordingSleep()
        client = HttpCustodyProvider(
            api_key="key", secret_key="secret", base_url="https://provider.test", max_retries=3, sleep=sleeper,
        )
        responses = [
            ProviderError("Service unavailable", http_status=503, is_transient=True),
            ProviderError("Too many requests", http_status=429, is_rate_limited=True),
            {"id": "vault-7"},
        ]

        async def fake_request_once(method, path, payload):
            entry = responses.pop(0)
            if isinstance(entry, Exception):
                raise entry
            return entry

        client._request_once = fake_request_once

        assert await client.create_vault("AssetLink-A1") == "vault-7"
        assert sleeper.delays == [1, 2]

    @pytest.mark.asyncio
    async def test_permanent_failures_are_not_retried(self):
        sleeper = RecordingSleep()
        client = HttpCustodyProvider(api_key="key", secret_key="secret", base_url="https://provider.test", sleep=sleeper)
        calls = []

        async def fake_request_once(method, path, payload):
            calls.append(path)
            raise ProviderError("Invalid vault", http_status=400)

        client._request_once = fake_request_once

        with pytest.raises(ProviderError):
            await client.get_task_status("link-1")
        assert len(calls) == 1
        assert sleeper.delays == []


class TestSimulatedProvider:
    """Every flow completes without credentials"""

    @pytest.mark.asyncio
    async def test_simulated_mint_end_to_end(self, db, notifier):
        engine = CustodyEngine(
            provider=SimulatedCustodyProvider(), store=InMemoryKeyedStore(), notifier=notifier,
            sleep=RecordingSleep(), resync_cooldown_seconds=0,
        )
        try:
            record = await link_and_approve(engine)
            await mint_asset(engine, record.id)

            minted = await engine.custody.get_custody_record(record.id)
            assert minted.status == CustodyStatus.MINTED.value
            assert minted.token_address.startswith("0x_mock_contract_")
        finally:
            await engine.shutdown()


class TestExecutorDispatch:
    """Closed dispatch over operation types"""

    def test_every_operation_type_has_a_handler(self):
        assert set(OPERATION_HANDLERS) == set(OperationType)

    def test_unknown_type_is_a_validation_error(self):
        executor = OperationExecutor(custody=None, provider=None, gas_station=None, audit=None)

        with pytest.raises(ValidationError):
            executor.handler_for("TELEPORT")
        assert type(executor.handler_for("MINT")).__name__ == "MintHandler"

    def test_burn_call_data_encoding(self):
        assert encode_burn_call_data("1", 0) == "0x42966c68" + "0" * 63 + "1"
        assert encode_burn_call_data("1.5", 6) == "0x42966c68" + format(1_500_000, "064x")
        assert to_base_units("0.000000000000000001", 18) == 1

        with pytest.raises(ValidationError):
            encode_burn_call_data("0", 18)
        with pytest.raises(ValidationError):
            encode_burn_call_data(str(2 ** 256), 0)
