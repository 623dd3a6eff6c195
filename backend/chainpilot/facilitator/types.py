# backend/chainpilot/facilitator/types.py
"""
Facilitator data types.

Witnesses and operations are parsed from the camelCase JSON the wallet signs
and serialized back to it unchanged, so the typed data a client signed and the
one the server verifies are always the same document.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from chainpilot.config import Settings
from chainpilot.errors import ValidationError
from chainpilot.facilitator.networks import NetworkConfig
from chainpilot.services.policy_models import NATIVE_TOKEN_ADDRESS

OP_TYPE_CODES = {"transfer": 0, "swap": 1, "call": 2}


class FacilitatorErrorCode(str, Enum):
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    INVALID_NONCE = "INVALID_NONCE"
    EXPIRED_DEADLINE = "EXPIRED_DEADLINE"
    BUDGET_EXCEEDED = "BUDGET_EXCEEDED"
    RATE_LIMITED = "RATE_LIMITED"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    TRANSACTION_FAILED = "TRANSACTION_FAILED"
    NETWORK_ERROR = "NETWORK_ERROR"
    INVALID_IMPLEMENTATION = "INVALID_IMPLEMENTATION"
    NOT_WHITELISTED = "NOT_WHITELISTED"
    UNAUTHORIZED = "UNAUTHORIZED"


def _require(data: Mapping[str, Any], key: str, kind: str) -> Any:
    value = data.get(key)
    if value is None or value == "":
        raise ValidationError(f"{kind} field '{key}' is required")
    return value


def _to_int(value: Any, name: str) -> int:
    try:
        if isinstance(value, str) and value.startswith("0x"):
            return int(value, 16)
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"'{name}' must be an integer, got {value!r}")


@dataclass(frozen=True)
class Witness:
    """Single-payment witness (primary type `Witness`)."""
    owner: str
    token: str
    amount: int
    to: str
    deadline: int
    payment_id: str
    nonce: int

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Witness":
        return cls(
            owner=_require(data, "owner", "Witness"),
            token=data.get("token") or NATIVE_TOKEN_ADDRESS,
            amount=_to_int(data.get("amount", 0), "amount"),
            to=_require(data, "to", "Witness"),
            deadline=_to_int(_require(data, "deadline", "Witness"), "deadline"),
            payment_id=_require(data, "paymentId", "Witness"),
            nonce=_to_int(data.get("nonce", 0), "nonce"),
        )

    def to_message(self) -> Dict[str, Any]:
        # amount is a decimal string so JS clients never lose uint256 precision
        return {
            "owner": self.owner,
            "token": self.token,
            "amount": str(self.amount),
            "to": self.to,
            "deadline": self.deadline,
            "paymentId": self.payment_id,
            "nonce": self.nonce,
        }


@dataclass(frozen=True)
class BatchOperation:
    op_type: str  # transfer, swap, call
    token_in: str
    amount_in: int
    token_out: str
    min_amount_out: int
    target: str
    data: str = "0x"

    @property
    def op_code(self) -> int:
        return OP_TYPE_CODES[self.op_type]

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "BatchOperation":
        op_type = data.get("type") or data.get("opType")
        if isinstance(op_type, int):
            op_type = {code: name for name, code in OP_TYPE_CODES.items()}.get(op_type)
        if op_type not in OP_TYPE_CODES:
            raise ValidationError(f"Unsupported operation type: {op_type}")
        return cls(
            op_type=op_type,
            token_in=data.get("tokenIn") or NATIVE_TOKEN_ADDRESS,
            amount_in=_to_int(data.get("amountIn", 0), "amountIn"),
            token_out=data.get("tokenOut") or NATIVE_TOKEN_ADDRESS,
            min_amount_out=_to_int(data.get("minAmountOut", 0), "minAmountOut"),
            target=_require(data, "target", "Operation"),
            data=data.get("data") or "0x",
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.op_type,
            "tokenIn": self.token_in,
            "amountIn": str(self.amount_in),
            "tokenOut": self.token_out,
            "minAmountOut": str(self.min_amount_out),
            "target": self.target,
            "data": self.data,
        }


@dataclass(frozen=True)
class BatchWitness:
    """Batch witness (primary type `BatchWitness`)."""
    owner: str
    operations_hash: str
    deadline: int
    batch_id: str
    nonce: int

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "BatchWitness":
        return cls(
            owner=_require(data, "owner", "BatchWitness"),
            operations_hash=_require(data, "operationsHash", "BatchWitness"),
            deadline=_to_int(_require(data, "deadline", "BatchWitness"), "deadline"),
            batch_id=_require(data, "batchId", "BatchWitness"),
            nonce=_to_int(data.get("nonce", 0), "nonce"),
        )

    def to_message(self) -> Dict[str, Any]:
        return {
            "owner": self.owner,
            "operationsHash": self.operations_hash,
            "deadline": self.deadline,
            "batchId": self.batch_id,
            "nonce": self.nonce,
        }


@dataclass
class VerifyResult:
    valid: bool
    reason: Optional[str] = None
    error_code: Optional[FacilitatorErrorCode] = None
    payer: Optional[str] = None
    amount: Optional[int] = None
    token: Optional[str] = None
    nonce: Optional[int] = None
    deadline: Optional[int] = None
    recovered: Optional[str] = None
    operations_hash_valid: Optional[bool] = None

    @classmethod
    def invalid(cls, reason: str, code: FacilitatorErrorCode, **extra) -> "VerifyResult":
        return cls(valid=False, reason=reason, error_code=code, **extra)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"valid": self.valid}
        if self.reason:
            body["reason"] = self.reason
            body["code"] = self.error_code.value if self.error_code else None
        for key, value in (
            ("payer", self.payer),
            ("amount", str(self.amount) if self.amount is not None else None),
            ("token", self.token),
            ("nonce", self.nonce),
            ("deadline", self.deadline),
            ("recovered", self.recovered),
            ("operationsHashValid", self.operations_hash_valid),
        ):
            if value is not None:
                body[key] = value
        return body


@dataclass(frozen=True)
class TransactionData:
    """Optional raw call to execute instead of the witness transfer."""
    to: str
    data: str = "0x"
    value: int = 0

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> Optional["TransactionData"]:
        if not data:
            return None
        return cls(
            to=_require(data, "to", "Transaction"),
            data=data.get("data") or "0x",
            value=_to_int(data.get("value") or 0, "value"),
        )


@dataclass
class SettleRequest:
    network_id: str
    request_id: str
    witness: Witness
    signature: str
    signer_address: str
    transaction: Optional[TransactionData] = None


@dataclass
class BatchSettleRequest:
    network_id: str
    request_id: str
    witness: BatchWitness
    operations: List[BatchOperation]
    signature: str
    signer_address: str


@dataclass
class SettleResult:
    success: bool
    tx_hash: Optional[str] = None
    block_number: Optional[int] = None
    gas_used: Optional[int] = None
    effective_gas_price: Optional[int] = None
    error: Optional[str] = None
    error_code: Optional[FacilitatorErrorCode] = None

    @classmethod
    def failure(cls, error: str, code: FacilitatorErrorCode, tx_hash: Optional[str] = None) -> "SettleResult":
        return cls(success=False, error=error, error_code=code, tx_hash=tx_hash)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "txHash": self.tx_hash,
            "blockNumber": self.block_number,
            "gasUsed": str(self.gas_used) if self.gas_used is not None else None,
            "effectiveGasPrice": str(self.effective_gas_price) if self.effective_gas_price is not None else None,
            "error": self.error,
            "code": self.error_code.value if self.error_code else None,
        }


@dataclass
class FacilitatorConfig:
    """Per-network sponsor configuration."""
    network: NetworkConfig
    sponsor_private_key: str
    max_gas_price_gwei: int = 20
    max_gas_limit: int = 5_000_000
    daily_gas_budget_wei: int = 10**18
    per_tx_max_gas_wei: int = 10**16
    max_requests_per_minute: int = 10
    max_requests_per_address: int = 100
    rpc_timeout_seconds: float = 15.0
    implementation_whitelist: List[str] = field(default_factory=list)

    @classmethod
    def from_settings(cls, network: NetworkConfig, settings: Settings) -> "FacilitatorConfig":
        return cls(
            network=network,
            sponsor_private_key=settings.FACILITATOR_PRIVATE_KEY or "",
            max_gas_price_gwei=settings.MAX_GAS_PRICE_GWEI,
            max_gas_limit=settings.MAX_GAS_LIMIT,
            daily_gas_budget_wei=settings.DAILY_GAS_BUDGET_WEI,
            per_tx_max_gas_wei=settings.PER_TX_MAX_GAS_WEI,
            max_requests_per_minute=settings.MAX_REQUESTS_PER_MINUTE,
            max_requests_per_address=settings.MAX_REQUESTS_PER_ADDRESS,
            rpc_timeout_seconds=settings.RPC_TIMEOUT_SECONDS,
            implementation_whitelist=[network.implementation_contract],
        )
