"""
Gas station: keeps custody vaults funded with native gas before on-chain work

Balances are cached per vault/chain in the injected keyed store. When a vault
is below the minimum, a top-up is transferred from the funding vault and,
for pre-flight checks, the caller blocks until that transfer is terminal.
"""

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Awaitable, Callable, Optional

from caching.keyed_store import KeyedStore
from config import Config
from services.custody_provider import CustodyProvider, TaskStatusResult
from services.errors import ProviderError

logger = logging.getLogger(__name__)


@dataclass
class GasCheckResult:
    vault_id: str
    blockchain: str
    balance: Decimal
    funded: bool = False
    funding_tx_id: Optional[str] = None
    from_cache: bool = False


class GasStationService:
    """Ensures vaults hold the minimum gas reserve"""

    def __init__(
        self,
        provider: CustodyProvider,
        cache: KeyedStore,
        funding_vault_id: Optional[str] = None,
        min_threshold: Optional[Decimal] = None,
        top_up_amount: Optional[Decimal] = None,
        cache_ttl: Optional[float] = None,
        poll_interval: Optional[float] = None,
        max_poll_attempts: Optional[int] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.provider = provider
        self.cache = cache
        self.funding_vault_id = funding_vault_id or Config.GAS_VAULT_ID
        self.min_threshold = Config.MIN_GAS_THRESHOLD if min_threshold is None else min_threshold
        self.top_up_amount = Config.GAS_TOP_UP_AMOUNT if top_up_amount is None else top_up_amount
        self.cache_ttl = Config.GAS_BALANCE_CACHE_TTL_SECONDS if cache_ttl is None else cache_ttl
        self.poll_interval = Config.GAS_FUNDING_POLL_INTERVAL_SECONDS if poll_interval is None else poll_interval
        self.max_poll_attempts = max_poll_attempts or Config.GAS_FUNDING_MAX_ATTEMPTS
        self._sleep = sleep

    @staticmethod
    def cache_key(vault_id: str, blockchain: str) -> str:
        return f"gas:{vault_id}-{blockchain}"

    async def get_gas_balance(self, vault_id: str, blockchain: str) -> GasCheckResult:
        key = self.cache_key(vault_id, blockchain)
        cached = await self.cache.get(key)
        if cached is not None:
            return GasCheckResult(vault_id, blockchain, Decimal(cached), from_cache=True)

        balance = await self.provider.get_vault_balance(vault_id, blockchain)
        await self.cache.set(key, str(balance), ttl=self.cache_ttl)
        return GasCheckResult(vault_id, blockchain, Decimal(balance))

    async def ensure_gas_for_vault(self, vault_id: str, blockchain: str, wait: bool = True) -> GasCheckResult:
        """
        Top the vault up when it is below the minimum.

        wait=True blocks until the funding transfer is COMPLETED and raises
        ProviderError on any other terminal status or when the poll budget
        runs out. wait=False only submits the transfer.
        """
        check = await self.get_gas_balance(vault_id, blockchain)
        if check.balance >= self.min_threshold:
            logger.info(f"⛽ GAS_OK: vault {vault_id} has {check.balance} {blockchain}")
            return check

        if str(vault_id) == str(self.funding_vault_id):
            raise ProviderError(f"Funding vault {vault_id} is itself below the gas threshold")

        logger.info(
            f"⛽ GAS_TOP_UP: vault {vault_id} has {check.balance} < {self.min_threshold}, "
            f"sending {self.top_up_amount} from vault {self.funding_vault_id}"
        )
        tx_id = await self.provider.transfer(self.funding_vault_id, vault_id, blockchain, self.top_up_amount)
        check.funding_tx_id = tx_id

        if not wait:
            # Balance is unknown until the transfer lands
            await self.cache.delete(self.cache_key(vault_id, blockchain))
            return check

        await self.wait_for_funding(tx_id, vault_id)
        check.balance = check.balance + self.top_up_amount
        check.funded = True
        check.from_cache = False
        await self.cache.set(self.cache_key(vault_id, blockchain), str(check.balance), ttl=self.cache_ttl)
        logger.info(f"✅ GAS_FUNDED: vault {vault_id} now ~{check.balance} {blockchain} (tx {tx_id})")
        return check

    async def wait_for_funding(self, tx_id: str, vault_id: str) -> TaskStatusResult:
        for attempt in range(1, self.max_poll_attempts + 1):
            status = await self.provider.get_transaction_status(tx_id)
            if status.is_completed:
                return status
            if status.is_failed:
                logger.error(f"❌ GAS_FUNDING_FAILED: tx {tx_id} for vault {vault_id}: {status.failure_reason()}")
                raise ProviderError(
                    f"Gas funding transfer {tx_id} ended {status.failure_reason()}",
                    provider_status=status.status,
                    raw=status.raw,
                )
            logger.debug(f"⏳ GAS_FUNDING_PENDING: tx {tx_id} {status.status} ({attempt}/{self.max_poll_attempts})")
            await self._sleep(self.poll_interval)

        raise ProviderError(
            f"Gas funding transfer {tx_id} did not complete after {self.max_poll_attempts} checks",
            is_transient=True,
        )
