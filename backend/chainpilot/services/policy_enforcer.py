# backend/chainpilot/services/policy_enforcer.py
"""
Token policy enforcement.

Applied after the engine, for every token an action touches (a swap touches
two). Deny always wins over allow; a non-empty allow-list is exclusive.
"""

import logging
from typing import Iterable, List, Optional

from chainpilot.services.policy_models import (
    NATIVE_TOKEN_ADDRESS,
    PolicyEvaluationResult,
    PolicyRules,
    PolicyViolation,
    RiskLevel,
    Severity,
    ViolationType,
    max_risk,
    normalize_address,
)

logger = logging.getLogger(__name__)


def apply_token_policy(
    decision: PolicyEvaluationResult,
    rules: PolicyRules,
    candidate_token_addresses: Iterable[Optional[str]],
) -> PolicyEvaluationResult:
    """
    Layer token allow/deny checks on top of a base decision.

    Returns a new result; the input decision is never mutated. Candidates are
    de-duplicated and checked in sorted order so the outcome does not depend on
    the order the caller passed them in.
    """
    candidates = sorted({a for a in (normalize_address(t) for t in candidate_token_addresses) if a})
    added: List[PolicyViolation] = []

    for token in candidates:
        if token in rules.denied_tokens:
            added.append(PolicyViolation(
                ViolationType.DENIED_TOKEN,
                "This token is on your deny list",
                Severity.BLOCKING,
                {"tokenAddress": token},
            ))

    # The native coin has no contract to allow-list
    erc20_candidates = [t for t in candidates if t != NATIVE_TOKEN_ADDRESS]
    if rules.allowed_tokens and erc20_candidates:
        if not any(t in rules.allowed_tokens for t in erc20_candidates):
            added.append(PolicyViolation(
                ViolationType.TOKEN_NOT_ALLOWED,
                "Token not in allow-list",
                Severity.BLOCKING,
                {"tokenAddresses": erc20_candidates},
            ))

    if not added:
        return decision

    logger.info(f"Token policy blocked action: {[v.message for v in added]}")
    return PolicyEvaluationResult.build(
        list(decision.violations) + added,
        list(decision.warnings),
        decision.risk_level,
    )


def merge_decisions(decisions: Iterable[PolicyEvaluationResult]) -> PolicyEvaluationResult:
    """Combine per-operation decisions of a batch into one decision."""
    violations: List[PolicyViolation] = []
    warnings: List[PolicyViolation] = []
    risk = RiskLevel.LOW
    for decision in decisions:
        violations.extend(decision.violations)
        warnings.extend(decision.warnings)
        risk = max_risk(risk, decision.risk_level)
    return PolicyEvaluationResult.build(violations, warnings, risk)
