"""Live custody provider client (Fireblocks-compatible REST API)"""

import asyncio
import hashlib
import json
import logging
import time
import uuid
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Optional

import aiohttp
import jwt

from config import Config
from services.custody_provider import (
    CustodyProvider, IssueResult, ProviderTaskStatus, TaskStatusResult, TokenConfig,
)
from services.errors import ProviderError

logger = logging.getLogger(__name__)


def _mask(value: Optional[str]) -> str:
    if not value:
        return "<unset>"
    return f"{value[:4]}...{value[-4:]}" if len(value) > 8 else "****"


class HttpCustodyProvider(CustodyProvider):
    """
    aiohttp client for the custody provider.

    Each request is signed with a short-lived RS256 JWT carrying the request
    path and a SHA-256 of the body. Transient failures (timeouts, resets, 5xx,
    rate limits) are retried with 1s/2s/4s backoff before surfacing as
    ProviderError.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        max_retries: Optional[int] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.api_key = api_key or Config.CUSTODY_PROVIDER_API_KEY
        self.base_url = (base_url or Config.CUSTODY_PROVIDER_BASE_URL).rstrip("/")
        self.timeout_seconds = timeout_seconds or Config.CUSTODY_PROVIDER_TIMEOUT_SECONDS
        self.max_retries = Config.CUSTODY_PROVIDER_MAX_RETRIES if max_retries is None else max_retries
        self._sleep = sleep

        if secret_key is None and Config.CUSTODY_PROVIDER_SECRET_KEY_PATH:
            with open(Config.CUSTODY_PROVIDER_SECRET_KEY_PATH, "r", encoding="utf-8") as fh:
                secret_key = fh.read()
        self._secret_key = secret_key

        if not self.api_key or not self._secret_key:
            raise ProviderError("Custody provider credentials are not configured")
        logger.info(f"Custody provider client initialized with key: {_mask(self.api_key)}")

    # ------------------------------------------------------------------
    # transport
    # ------------------------------------------------------------------

    def _sign(self, path: str, body: str) -> str:
        now = int(time.time())
        claims = {
            "uri": path,
            "nonce": uuid.uuid4().hex,
            "iat": now,
            "exp": now + 55,
            "sub": self.api_key,
            "bodyHash": hashlib.sha256(body.encode("utf-8")).hexdigest(),
        }
        return jwt.encode(claims, self._secret_key, algorithm="RS256")

    def _get_headers(self, path: str, body: str) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "X-API-Key": self.api_key,
            "Authorization": f"Bearer {self._sign(path, body)}",
        }

    async def _request_once(self, method: str, path: str, payload: Optional[Dict[str, Any]]) -> Any:
        body = json.dumps(payload) if payload is not None else ""
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.request(
                    method,
                    f"{self.base_url}{path}",
                    headers=self._get_headers(path, body),
                    data=body or None,
                ) as response:
                    text = await response.text()
                    try:
                        data = json.loads(text) if text else {}
                    except ValueError:
                        data = {"raw": text}

                    if response.status >= 400:
                        message = data.get("message") if isinstance(data, dict) else None
                        message = message or f"Provider API error: HTTP {response.status}"
                        flags = ProviderError.classify_message(message, response.status)
                        raise ProviderError(message, http_status=response.status, raw=data if isinstance(data, dict) else {}, **flags)
                    return data
        except ProviderError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ProviderError.from_exception(e)

    async def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Any:
        """Request with retry on transient failures"""
        attempt = 0
        while True:
            try:
                return await self._request_once(method, path, payload)
            except ProviderError as e:
                if not e.is_transient or attempt >= self.max_retries:
                    logger.error(f"❌ PROVIDER_REQUEST_FAILED: {method} {path}: {e.message}")
                    raise
                delay = 2 ** attempt
                attempt += 1
                logger.warning(
                    f"🔄 PROVIDER_RETRY: {method} {path} attempt {attempt}/{self.max_retries} in {delay}s ({e.message})"
                )
                await self._sleep(delay)

    # ------------------------------------------------------------------
    # vaults
    # ------------------------------------------------------------------

    async def create_vault(self, name: str, customer_ref_id: Optional[str] = None) -> str:
        payload = {"name": name, "hiddenOnUI": False, "autoFuel": False}
        if customer_ref_id:
            payload["customerRefId"] = customer_ref_id
        data = await self._request("POST", "/v1/vault/accounts", payload)
        logger.info(f"🏦 VAULT_CREATED: {data.get('id')} ({name})")
        return str(data["id"])

    async def create_or_get_address(self, vault_id: str, asset_symbol: str) -> str:
        path = f"/v1/vault/accounts/{vault_id}/assets/{asset_symbol}/addresses"
        try:
            existing = await self._request("GET", path)
            addresses = existing.get("addresses", existing) if isinstance(existing, dict) else existing
            if addresses:
                return addresses[0]["address"]
        except ProviderError as e:
            if e.http_status != 404:
                raise

        await self._request("POST", f"/v1/vault/accounts/{vault_id}/{asset_symbol}", {})
        created = await self._request("POST", path, {"description": "AssetLink custody wallet"})
        return created["address"]

    async def get_vault_balance(self, vault_id: str, asset_symbol: str) -> Decimal:
        data = await self._request("GET", f"/v1/vault/accounts/{vault_id}/{asset_symbol}")
        return Decimal(str(data.get("available") or data.get("total") or "0"))

    # ------------------------------------------------------------------
    # tokenization
    # ------------------------------------------------------------------

    async def issue_token(self, vault_id: str, token_config: TokenConfig) -> IssueResult:
        supply_base_units = str(int(Decimal(token_config.total_supply) * (Decimal(10) ** token_config.decimals)))
        payload = {
            "blockchainId": token_config.blockchain_id,
            "assetId": token_config.blockchain_id,
            "vaultAccountId": str(vault_id),
            "createParams": {
                "contractId": token_config.contract_template_id or Config.TOKEN_CONTRACT_TEMPLATE_ID,
                "deployFunctionParams": [
                    {"name": "name", "type": "string", "value": token_config.name},
                    {"name": "symbol", "type": "string", "value": token_config.symbol},
                    {"name": "decimals", "type": "uint8", "value": str(token_config.decimals)},
                    {"name": "totalSupply", "type": "uint256", "value": supply_base_units},
                ],
            },
            "displayName": token_config.name,
            "useGasless": False,
            "feeLevel": "MEDIUM",
        }
        data = await self._request("POST", "/v1/tokenization/tokens", payload)
        logger.info(f"🪙 TOKEN_ISSUE_SUBMITTED: {token_config.symbol} link={data.get('id')} status={data.get('status')}")
        return IssueResult(task_id=str(data["id"]), status=str(data.get("status", ProviderTaskStatus.SUBMITTED.value)))

    async def get_task_status(self, task_id: str) -> TaskStatusResult:
        data = await self._request("GET", f"/v1/tokenization/tokens/{task_id}")
        result = TaskStatusResult.from_payload(data)
        if result.is_failed:
            logger.error(
                f"🚨 TOKENIZATION_FAILED: {task_id} status={result.status} "
                f"substatus={result.substatus} error={result.error_message}"
            )
        return result

    async def find_live_token(self, vault_id: str, token_symbol: str) -> Optional[TaskStatusResult]:
        data = await self._request(
            "GET", f"/v1/tokenization/tokens?vaultAccountId={vault_id}&status={ProviderTaskStatus.COMPLETED.value}"
        )
        tokens = data.get("data", []) if isinstance(data, dict) else data
        for token in tokens or []:
            metadata = token.get("tokenMetadata") or {}
            if str(metadata.get("symbol", "")).upper() == token_symbol.upper() and metadata.get("contractAddress"):
                return TaskStatusResult.from_payload(token)
        return None

    # ------------------------------------------------------------------
    # transactions
    # ------------------------------------------------------------------

    async def get_transaction_status(self, tx_id: str) -> TaskStatusResult:
        data = await self._request("GET", f"/v1/transactions/{tx_id}")
        return TaskStatusResult.from_payload(data)

    async def transfer(self, from_vault_id: str, to_vault_id: str, asset_symbol: str, amount: Decimal) -> str:
        payload = {
            "assetId": asset_symbol,
            "source": {"type": "VAULT_ACCOUNT", "id": str(from_vault_id)},
            "destination": {"type": "VAULT_ACCOUNT", "id": str(to_vault_id)},
            "amount": str(amount),
            "note": "Custody Transfer",
            "feeLevel": "MEDIUM",
        }
        data = await self._request("POST", "/v1/transactions", payload)
        logger.info(f"💸 TRANSFER_SUBMITTED: {amount} {asset_symbol} {from_vault_id} -> {to_vault_id} tx={data.get('id')}")
        return str(data["id"])

    async def contract_call(
        self, vault_id: str, contract_address: str, data: str, asset_symbol: str, note: Optional[str] = None
    ) -> str:
        payload = {
            "operation": "CONTRACT_CALL",
            "assetId": asset_symbol,
            "source": {"type": "VAULT_ACCOUNT", "id": str(vault_id)},
            "destination": {"type": "ONE_TIME_ADDRESS", "oneTimeAddress": {"address": contract_address}},
            "note": note or "AssetLink contract call",
            "amount": "0",
            "extraParameters": {"contractCallData": data},
        }
        result = await self._request("POST", "/v1/transactions", payload)
        logger.info(f"📜 CONTRACT_CALL_SUBMITTED: {contract_address} tx={result.get('id')}")
        return str(result["id"])


_provider: Optional[CustodyProvider] = None


def get_custody_provider() -> CustodyProvider:
    """Live client when credentials are configured, simulator otherwise"""
    global _provider
    if _provider is None:
        if Config.provider_configured():
            _provider = HttpCustodyProvider()
        else:
            from services.custody_provider import SimulatedCustodyProvider
            _provider = SimulatedCustodyProvider()
    return _provider
