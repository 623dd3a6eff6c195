# backend/chainpilot/services/policy_validators.py
"""
Policy validation helpers.

Used by the policy store before persisting updates and by the transaction
executor to re-check spend caps at settlement time without a full engine run.
"""

from dataclasses import replace
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from eth_utils import is_address

from chainpilot.services.policy_models import PolicyRules, SecurityLevel

SCALAR_FIELDS = (
    "security_level",
    "max_per_tx_usd",
    "max_daily_usd",
    "require_verified_contracts",
    "large_transaction_threshold_pct",
    "max_slippage_bps",
)

LIST_FIELDS = ("allowed_tokens", "denied_tokens", "allowed_contracts", "denied_contracts")


def validate_policy(values: Mapping[str, Any]) -> Tuple[bool, List[str]]:
    """
    Validate policy values (a full or partial mapping of scalar fields).

    Returns:
        (valid, errors)
    """
    errors: List[str] = []

    level = values.get("security_level")
    if level is not None and not isinstance(level, SecurityLevel):
        try:
            SecurityLevel.parse(str(level))
        except ValueError:
            errors.append("Security level must be STRICT, NORMAL, or PERMISSIVE")

    max_per_tx = values.get("max_per_tx_usd")
    if max_per_tx is not None and Decimal(max_per_tx) < 0:
        errors.append("Per-transaction limit must be a positive number")

    max_daily = values.get("max_daily_usd")
    if max_daily is not None and Decimal(max_daily) < 0:
        errors.append("Daily limit must be a positive number")

    slippage = values.get("max_slippage_bps")
    if slippage is not None and not 0 <= int(slippage) <= 10000:
        errors.append("Slippage must be between 0 and 10000 basis points (0-100%)")

    threshold = values.get("large_transaction_threshold_pct")
    if threshold is not None and not 1 <= int(threshold) <= 100:
        errors.append("Large transaction threshold must be between 1 and 100 percent")

    if max_per_tx is not None and max_daily is not None and Decimal(max_per_tx) > Decimal(max_daily):
        errors.append("Per-transaction limit cannot exceed daily limit")

    return len(errors) == 0, errors


def validate_list_address(address: Optional[str]) -> Optional[str]:
    """Return an error message for an invalid allow/deny list address, else None."""
    if not address:
        return "Address is required"
    if not is_address(address.strip()):
        return f"Invalid address format: {address}"
    return None


def validate_list_addresses(addresses: Iterable[str]) -> List[str]:
    return [err for err in (validate_list_address(a) for a in addresses) if err]


def merge_policy_update(current: PolicyRules, updates: Mapping[str, Any]) -> PolicyRules:
    """
    Apply a partial update. Only keys present in `updates` change.

    Explicit None on a limit means "unlimited" and is applied as-is.
    """
    changes: Dict[str, Any] = {}
    for name in SCALAR_FIELDS:
        if name in updates:
            changes[name] = updates[name]
    if "security_level" in changes and not isinstance(changes["security_level"], SecurityLevel):
        changes["security_level"] = SecurityLevel.parse(changes["security_level"])
    for name in ("max_per_tx_usd", "max_daily_usd"):
        if changes.get(name) is not None:
            changes[name] = Decimal(changes[name])
    merged = replace(current, **changes)
    lists = {name: updates[name] for name in LIST_FIELDS if updates.get(name) is not None}
    return merged.with_lists(**lists) if lists else merged


def validate_transaction_value(
    value_usd: Decimal,
    spent_today_usd: Decimal,
    rules: PolicyRules,
) -> Tuple[bool, List[str]]:
    """Per-transaction and daily cap check without a full engine run."""
    errors: List[str] = []
    if rules.max_per_tx_usd is not None and value_usd > rules.max_per_tx_usd:
        errors.append(f"Exceeds per-transaction limit of ${rules.max_per_tx_usd:.2f}")
    if rules.max_daily_usd is not None and spent_today_usd + value_usd > rules.max_daily_usd:
        errors.append(f"Would exceed daily limit of ${rules.max_daily_usd:.2f}")
    return len(errors) == 0, errors
