# backend/chainpilot/services/policy_models.py
"""
Policy domain types.

Plain data shared by the policy engine, the token enforcer and the stores.
No I/O happens here.
"""

from dataclasses import dataclass, field, replace
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional


NATIVE_TOKEN_ADDRESS = "0x0000000000000000000000000000000000000000"

# Slippage above this is treated as high risk even if the policy allows it
HIGH_SLIPPAGE_BPS = 500


class SecurityLevel(str, Enum):
    STRICT = "STRICT"          # Allow-list only
    NORMAL = "NORMAL"          # Deny-list plus warnings
    PERMISSIVE = "PERMISSIVE"  # Contract deny-list and spend caps only

    @classmethod
    def parse(cls, value: str) -> "SecurityLevel":
        """Parse a level name. RELAXED is accepted as an alias of PERMISSIVE."""
        normalized = (value or "").strip().upper()
        if normalized == "RELAXED":
            return cls.PERMISSIVE
        return cls(normalized)


class RiskLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    BLOCKED = "BLOCKED"

    @property
    def rank(self) -> int:
        return RISK_ORDER[self]


RISK_ORDER = {
    RiskLevel.LOW: 0,
    RiskLevel.MEDIUM: 1,
    RiskLevel.HIGH: 2,
    RiskLevel.BLOCKED: 3,
}


def max_risk(current: RiskLevel, candidate: RiskLevel) -> RiskLevel:
    return candidate if candidate.rank > current.rank else current


class ViolationType(str, Enum):
    EXCEEDS_PER_TX_LIMIT = "exceeds_per_tx_limit"
    EXCEEDS_DAILY_LIMIT = "exceeds_daily_limit"
    DENIED_TOKEN = "denied_token"
    DENIED_CONTRACT = "denied_contract"
    UNKNOWN_CONTRACT = "unknown_contract"
    HIGH_SLIPPAGE = "high_slippage"
    HIGH_HOLDINGS_PERCENTAGE = "high_holdings_percentage"
    UNAUDITED_CONTRACT = "unaudited_contract"
    HIGH_RISK_CONTRACT = "high_risk_contract"
    TOKEN_NOT_ALLOWED = "token_not_allowed"
    CONTRACT_NOT_ALLOWED = "contract_not_allowed"
    LARGE_TRANSACTION = "large_transaction"
    NOT_WHITELISTED = "not_whitelisted"


class Severity(str, Enum):
    WARNING = "warning"
    BLOCKING = "blocking"


def normalize_address(address: Optional[str]) -> Optional[str]:
    """Lower-case an address for storage and comparison. Empty values become None."""
    if not address:
        return None
    return address.strip().lower()


def normalize_addresses(addresses: Iterable[Optional[str]]) -> FrozenSet[str]:
    return frozenset(a for a in (normalize_address(x) for x in addresses) if a)


@dataclass(frozen=True)
class PolicyRules:
    """
    A session's risk configuration, detached from the database.

    Limits of None mean unlimited. All list addresses are lower-cased.
    """
    security_level: SecurityLevel = SecurityLevel.NORMAL
    max_per_tx_usd: Optional[Decimal] = Decimal("1000")
    max_daily_usd: Optional[Decimal] = Decimal("5000")
    require_verified_contracts: bool = False
    large_transaction_threshold_pct: int = 30
    max_slippage_bps: int = 300
    allowed_tokens: FrozenSet[str] = frozenset()
    denied_tokens: FrozenSet[str] = frozenset()
    allowed_contracts: FrozenSet[str] = frozenset()
    denied_contracts: FrozenSet[str] = frozenset()

    def with_lists(self, **lists: Iterable[str]) -> "PolicyRules":
        return replace(self, **{name: normalize_addresses(values) for name, values in lists.items()})


DEFAULT_POLICY = PolicyRules()


@dataclass(frozen=True)
class ActionContext:
    """What the engine needs to know about the action being evaluated."""
    token_address: Optional[str] = None
    target_address: Optional[str] = None
    slippage_bps: Optional[int] = None
    value_usd: Optional[Decimal] = None
    contract_verified: Optional[bool] = None
    holdings_percentage: Optional[float] = None
    audit_risk: Optional[RiskLevel] = None


@dataclass(frozen=True)
class PolicyViolation:
    type: ViolationType
    message: str
    severity: Severity
    details: Optional[Dict[str, Any]] = None

    @property
    def is_blocking(self) -> bool:
        return self.severity is Severity.BLOCKING

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "type": self.type.value,
            "message": self.message,
            "severity": self.severity.value,
        }
        if self.details:
            data["details"] = self.details
        return data


@dataclass(frozen=True)
class PolicyEvaluationResult:
    allowed: bool
    risk_level: RiskLevel
    violations: List[PolicyViolation] = field(default_factory=list)
    warnings: List[PolicyViolation] = field(default_factory=list)

    @property
    def reasons(self) -> List[str]:
        """Blocking messages first, then warning messages, each in check order."""
        return [v.message for v in self.violations] + [w.message for w in self.warnings]

    @classmethod
    def build(
        cls,
        violations: List[PolicyViolation],
        warnings: List[PolicyViolation],
        risk_level: RiskLevel,
    ) -> "PolicyEvaluationResult":
        blocked = any(v.is_blocking for v in violations)
        if blocked:
            risk_level = RiskLevel.BLOCKED
        return cls(
            allowed=not blocked,
            risk_level=risk_level,
            violations=list(violations),
            warnings=list(warnings),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "riskLevel": self.risk_level.value,
            "violations": [v.to_dict() for v in self.violations],
            "warnings": [w.to_dict() for w in self.warnings],
            "reasons": self.reasons,
        }
