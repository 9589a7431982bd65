"""
Custody provider contract

The engine talks to the external custodial signing service only through
CustodyProvider. HttpCustodyProvider (services/fireblocks_client.py) is the
live implementation; SimulatedCustodyProvider stands in when credentials are
not configured so local runs complete every flow end-to-end.
"""

import logging
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class ProviderTaskStatus(Enum):
    """Task / transaction statuses reported by the provider"""
    PENDING_APPROVAL = "PENDING_APPROVAL"
    SUBMITTED = "SUBMITTED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"
    BLOCKED = "BLOCKED"


FAILURE_STATUSES = frozenset({
    ProviderTaskStatus.FAILED.value,
    ProviderTaskStatus.REJECTED.value,
    ProviderTaskStatus.CANCELLED.value,
    ProviderTaskStatus.BLOCKED.value,
})


@dataclass
class TaskStatusResult:
    """Normalized view of a provider task or transaction"""
    status: str
    task_id: Optional[str] = None
    tx_hash: Optional[str] = None
    contract_address: Optional[str] = None
    substatus: Optional[str] = None
    error_message: Optional[str] = None
    blockchain_id: Optional[str] = None
    token_standard: Optional[str] = None
    decimals: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_completed(self) -> bool:
        return self.status == ProviderTaskStatus.COMPLETED.value

    @property
    def is_failed(self) -> bool:
        return self.status in FAILURE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.is_completed or self.is_failed

    def failure_reason(self) -> str:
        """Human-readable '<STATUS>: <substatus> - <message>' for support triage"""
        reason = self.status
        if self.substatus:
            reason += f": {self.substatus}"
        if self.error_message:
            reason += f" - {self.error_message}"
        return reason

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "TaskStatusResult":
        metadata = payload.get("tokenMetadata") or {}
        decimals = metadata.get("decimals")
        return cls(
            status=str(payload.get("status", "")).upper(),
            task_id=payload.get("id") or payload.get("tokenId"),
            tx_hash=payload.get("txHash"),
            contract_address=metadata.get("contractAddress") or payload.get("contractAddress"),
            substatus=payload.get("substatus") or payload.get("subStatus"),
            error_message=payload.get("errorMessage"),
            blockchain_id=metadata.get("blockchain") or payload.get("blockchainId"),
            token_standard=metadata.get("tokenStandard"),
            decimals=int(decimals) if decimals is not None else None,
            raw=payload,
        )


@dataclass
class IssueResult:
    task_id: str
    status: str


@dataclass
class TokenConfig:
    """Parameters for deploying a new token contract"""
    name: str
    symbol: str
    decimals: int
    total_supply: str
    blockchain_id: str
    contract_template_id: Optional[str] = None


class CustodyProvider:
    """Interface every custody provider implementation satisfies"""

    async def create_vault(self, name: str, customer_ref_id: Optional[str] = None) -> str:
        raise NotImplementedError

    async def create_or_get_address(self, vault_id: str, asset_symbol: str) -> str:
        raise NotImplementedError

    async def get_vault_balance(self, vault_id: str, asset_symbol: str) -> Decimal:
        raise NotImplementedError

    async def issue_token(self, vault_id: str, token_config: TokenConfig) -> IssueResult:
        raise NotImplementedError

    async def get_task_status(self, task_id: str) -> TaskStatusResult:
        """Status of a tokenization (mint) task"""
        raise NotImplementedError

    async def get_transaction_status(self, tx_id: str) -> TaskStatusResult:
        """Status of a transfer or contract-call transaction"""
        raise NotImplementedError

    async def transfer(self, from_vault_id: str, to_vault_id: str, asset_symbol: str, amount: Decimal) -> str:
        raise NotImplementedError

    async def contract_call(
        self, vault_id: str, contract_address: str, data: str, asset_symbol: str, note: Optional[str] = None
    ) -> str:
        raise NotImplementedError

    async def find_live_token(self, vault_id: str, token_symbol: str) -> Optional[TaskStatusResult]:
        """Look up a deployed token by vault and symbol, independent of any task id"""
        raise NotImplementedError


class SimulatedCustodyProvider(CustodyProvider):
    """
    Local stand-in used when provider credentials are missing.

    Every call succeeds immediately and task lookups report COMPLETED with
    mock hashes, mirroring the provider's sandbox behaviour.
    """

    def __init__(self, gas_balance: Decimal = Decimal("1")):
        self.gas_balance = gas_balance
        self._tokens: Dict[str, Dict[str, Any]] = {}
        logger.warning("⚠️ CUSTODY_PROVIDER_SIMULATION: credentials missing, using simulated provider")

    @staticmethod
    def _mock_id(prefix: str) -> str:
        return f"{prefix}_{uuid.uuid4().hex[:16]}"

    async def create_vault(self, name: str, customer_ref_id: Optional[str] = None) -> str:
        vault_id = self._mock_id("sim_vault")
        logger.info(f"🧪 SIMULATION: Created vault {vault_id} for {name}")
        return vault_id

    async def create_or_get_address(self, vault_id: str, asset_symbol: str) -> str:
        return "0x" + uuid.uuid5(uuid.NAMESPACE_URL, f"{vault_id}:{asset_symbol}").hex.ljust(40, "0")[:40]

    async def get_vault_balance(self, vault_id: str, asset_symbol: str) -> Decimal:
        return self.gas_balance

    async def issue_token(self, vault_id: str, token_config: TokenConfig) -> IssueResult:
        task_id = self._mock_id("sim_link")
        self._tokens[task_id] = {"vault_id": vault_id, "symbol": token_config.symbol}
        logger.info(f"🧪 SIMULATION: Issued token {token_config.symbol} as {task_id}")
        return IssueResult(task_id=task_id, status=ProviderTaskStatus.PENDING_APPROVAL.value)

    async def get_task_status(self, task_id: str) -> TaskStatusResult:
        return TaskStatusResult(
            status=ProviderTaskStatus.COMPLETED.value,
            task_id=task_id,
            tx_hash=f"0x_mock_hash_{task_id}",
            contract_address=f"0x_mock_contract_{task_id}",
            decimals=18,
        )

    async def get_transaction_status(self, tx_id: str) -> TaskStatusResult:
        return TaskStatusResult(status=ProviderTaskStatus.COMPLETED.value, task_id=tx_id, tx_hash=f"0x_mock_hash_{tx_id}")

    async def transfer(self, from_vault_id: str, to_vault_id: str, asset_symbol: str, amount: Decimal) -> str:
        return self._mock_id("sim_tx")

    async def contract_call(
        self, vault_id: str, contract_address: str, data: str, asset_symbol: str, note: Optional[str] = None
    ) -> str:
        return self._mock_id("sim_tx")

    async def find_live_token(self, vault_id: str, token_symbol: str) -> Optional[TaskStatusResult]:
        for task_id, token in self._tokens.items():
            if token["vault_id"] == vault_id and token["symbol"] == token_symbol:
                return await self.get_task_status(task_id)
        return None
