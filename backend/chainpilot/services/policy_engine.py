# backend/chainpilot/services/policy_engine.py
"""
Policy Engine.

Evaluates an intended on-chain action against a session's PolicyRules and
returns an allow/warn/block decision with ordered reasons.

Check order:
1. Contract deny-list
2. Contract allow-list (STRICT) / verified-contract requirement (NORMAL)
3. Slippage cap
4. Per-transaction USD cap
5. Daily USD cap (caller supplies today's spend)
6. Large-transaction warning (share of the daily cap)
7. Holdings share and audit risk warnings

The engine is a pure function of its inputs. It keeps no state between calls,
so re-evaluating the same action always yields the same result.
"""

import logging
from decimal import Decimal
from typing import List, Optional

from chainpilot.services.policy_models import (
    HIGH_SLIPPAGE_BPS,
    ActionContext,
    PolicyEvaluationResult,
    PolicyRules,
    PolicyViolation,
    RiskLevel,
    SecurityLevel,
    Severity,
    ViolationType,
    max_risk,
    normalize_address,
)

logger = logging.getLogger(__name__)


def _usd(value: Decimal) -> str:
    return f"${value:.2f}"


def _pct(bps: int) -> str:
    return f"{Decimal(bps) / 100:g}%"


class _Findings:
    """Accumulates violations and warnings while tracking the worst risk."""

    def __init__(self):
        self.violations: List[PolicyViolation] = []
        self.warnings: List[PolicyViolation] = []
        self.risk = RiskLevel.LOW

    def block(self, type_: ViolationType, message: str, **details):
        self.violations.append(PolicyViolation(type_, message, Severity.BLOCKING, details or None))
        self.risk = RiskLevel.BLOCKED

    def warn(self, type_: ViolationType, message: str, risk: RiskLevel, **details):
        self.warnings.append(PolicyViolation(type_, message, Severity.WARNING, details or None))
        self.risk = max_risk(self.risk, risk)

    def result(self) -> PolicyEvaluationResult:
        return PolicyEvaluationResult.build(self.violations, self.warnings, self.risk)


class PolicyEngine:
    """
    Evaluates actions against one session's policy.

    Usage:
        engine = PolicyEngine(rules)
        decision = engine.evaluate("swap", ActionContext(...), spent_today_usd, signer)
    """

    def __init__(self, rules: PolicyRules):
        self.rules = rules

    def evaluate(
        self,
        action_type: str,
        context: ActionContext,
        spent_today_usd: Decimal = Decimal("0"),
        signer_address: Optional[str] = None,
    ) -> PolicyEvaluationResult:
        rules = self.rules
        level = rules.security_level
        findings = _Findings()

        self._check_contract(context, findings)
        self._check_slippage(context, findings)
        self._check_spend(context, Decimal(spent_today_usd or 0), findings)

        if level is not SecurityLevel.PERMISSIVE:
            self._check_holdings(context, findings)
            self._check_audit(context, findings)

        result = findings.result()
        logger.debug(
            f"Policy {'allowed' if result.allowed else 'blocked'} {action_type} for {signer_address}: "
            f"risk={result.risk_level.value} level={level.value} "
            f"violations={len(result.violations)} warnings={len(result.warnings)}"
        )
        return result

    def _check_contract(self, context: ActionContext, findings: _Findings):
        rules = self.rules
        target = normalize_address(context.target_address)
        if not target:
            return

        if target in rules.denied_contracts:
            findings.block(
                ViolationType.DENIED_CONTRACT,
                "This contract is on your deny list",
                contractAddress=target,
            )
            return

        if rules.security_level is SecurityLevel.PERMISSIVE:
            return

        in_allow_list = target in rules.allowed_contracts
        if rules.security_level is SecurityLevel.STRICT:
            if not in_allow_list:
                findings.block(
                    ViolationType.CONTRACT_NOT_ALLOWED,
                    "This contract is not in your allow list (Strict mode)",
                    contractAddress=target,
                )
            return

        if in_allow_list or context.contract_verified:
            return
        if rules.require_verified_contracts:
            findings.block(
                ViolationType.UNKNOWN_CONTRACT,
                "Interaction with unverified contracts is disabled in your settings",
                contractAddress=target,
            )
        else:
            findings.warn(
                ViolationType.UNKNOWN_CONTRACT,
                "This is an unverified contract - proceed with caution",
                RiskLevel.HIGH,
                contractAddress=target,
            )

    def _check_slippage(self, context: ActionContext, findings: _Findings):
        slippage = context.slippage_bps
        if slippage is None:
            return
        limit = self.rules.max_slippage_bps
        if slippage > limit:
            findings.block(
                ViolationType.HIGH_SLIPPAGE,
                f"Slippage ({_pct(slippage)}) exceeds your maximum ({_pct(limit)})",
                slippage=slippage,
                maxSlippage=limit,
            )
        elif slippage > HIGH_SLIPPAGE_BPS and self.rules.security_level is not SecurityLevel.PERMISSIVE:
            findings.warn(
                ViolationType.HIGH_SLIPPAGE,
                f"Very high slippage ({_pct(slippage)}) - you may receive significantly less than expected",
                RiskLevel.HIGH,
                slippage=slippage,
            )

    def _check_spend(self, context: ActionContext, spent_today: Decimal, findings: _Findings):
        rules = self.rules
        if context.value_usd is None:
            return
        value = Decimal(context.value_usd)

        if rules.max_per_tx_usd is not None and value > rules.max_per_tx_usd:
            findings.block(
                ViolationType.EXCEEDS_PER_TX_LIMIT,
                f"Transaction value ({_usd(value)}) exceeds per-transaction limit ({_usd(rules.max_per_tx_usd)})",
                value=str(value),
                limit=str(rules.max_per_tx_usd),
            )

        if rules.max_daily_usd is None:
            return

        if spent_today + value > rules.max_daily_usd:
            findings.block(
                ViolationType.EXCEEDS_DAILY_LIMIT,
                f"This transaction would exceed your daily limit ({_usd(rules.max_daily_usd)}). "
                f"Today's spend: {_usd(spent_today)}, this transaction: {_usd(value)}",
                todaySpend=str(spent_today),
                transactionValue=str(value),
                dailyLimit=str(rules.max_daily_usd),
            )

        if rules.security_level is SecurityLevel.PERMISSIVE:
            return
        threshold = rules.max_daily_usd * Decimal(rules.large_transaction_threshold_pct) / 100
        if value > threshold:
            findings.warn(
                ViolationType.LARGE_TRANSACTION,
                f"Large transaction: {_usd(value)} is more than "
                f"{rules.large_transaction_threshold_pct}% of your daily limit",
                RiskLevel.MEDIUM,
                value=str(value),
                threshold=str(threshold),
            )

    def _check_holdings(self, context: ActionContext, findings: _Findings):
        pct = context.holdings_percentage
        if pct is None:
            return
        if pct > self.rules.large_transaction_threshold_pct:
            findings.warn(
                ViolationType.HIGH_HOLDINGS_PERCENTAGE,
                f"You're moving {pct:g}% of your holdings in this token",
                RiskLevel.MEDIUM,
                percentage=pct,
            )

    def _check_audit(self, context: ActionContext, findings: _Findings):
        audit = context.audit_risk
        if audit is RiskLevel.BLOCKED:
            findings.block(
                ViolationType.HIGH_RISK_CONTRACT,
                "This contract has critical security issues and should not be used",
            )
        elif audit is RiskLevel.HIGH:
            findings.warn(
                ViolationType.HIGH_RISK_CONTRACT,
                "This contract has high-risk findings in its audit",
                RiskLevel.HIGH,
            )
        elif audit is RiskLevel.MEDIUM:
            findings.warn(
                ViolationType.HIGH_RISK_CONTRACT,
                "This contract has medium-risk findings - review before proceeding",
                RiskLevel.MEDIUM,
            )


def evaluate_policy(
    rules: PolicyRules,
    action_type: str,
    context: ActionContext,
    spent_today_usd: Decimal = Decimal("0"),
    signer_address: Optional[str] = None,
) -> PolicyEvaluationResult:
    """Functional shortcut for one-off evaluations."""
    return PolicyEngine(rules).evaluate(action_type, context, spent_today_usd, signer_address)
