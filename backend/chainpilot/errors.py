# backend/chainpilot/errors.py
"""
Error taxonomy shared by services and routers.

Every error carries an HTTP status and a machine-readable code. The FastAPI
handler in main.py renders them as {"error": ..., "code": ..., "details": ...}.
"""

from typing import Any, Dict, List, Optional


class ChainPilotError(Exception):
    """Base error for everything the API reports to clients."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.details = details
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(ChainPilotError):
    """Malformed or missing request fields."""
    status_code = 400
    code = "VALIDATION_ERROR"


class PolicyRejection(ChainPilotError):
    """Action blocked by the session's policy. Carries the ordered reasons."""
    status_code = 403
    code = "POLICY_VIOLATION"

    def __init__(self, reasons: List[str], decision: Optional[Dict[str, Any]] = None):
        self.reasons = reasons
        self.decision = decision
        super().__init__("; ".join(reasons) or "Transaction blocked by policy", details={"reasons": reasons})

    def to_dict(self) -> Dict[str, Any]:
        body = {"success": False, "error": self.message, "code": self.code, "reasons": list(self.reasons)}
        if self.decision is not None:
            body["policyDecision"] = self.decision
        return body


class NotFoundError(ChainPilotError):
    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, resource: str):
        super().__init__(f"{resource} not found")


class SignatureError(ChainPilotError):
    """Recovery mismatch, expired deadline or reused nonce."""
    status_code = 400
    code = "INVALID_SIGNATURE"


class InvalidStateTransition(ChainPilotError):
    status_code = 409
    code = "INVALID_STATE"

    def __init__(self, request_id: str, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(
            f"Request {request_id} cannot move from '{current}' to '{target}'",
            details={"current": current, "target": target},
        )


class UpstreamError(ChainPilotError):
    """RPC node or database failure."""
    status_code = 502
    code = "UPSTREAM_ERROR"

    def __init__(self, service: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.service = service
        super().__init__(f"{service}: {message}", details=details)


class FacilitatorUnconfigured(ChainPilotError):
    """Missing sponsor key or contract addresses for a network."""
    status_code = 503
    code = "FACILITATOR_UNCONFIGURED"
