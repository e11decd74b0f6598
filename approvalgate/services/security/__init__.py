from approvalgate.services.security.alerts import AlertDispatcher, build_alert_signature
from approvalgate.services.security.block_policy import BlockThresholds, next_tier_change, tier_for_count
from approvalgate.services.security.credentials import CredentialValidator
from approvalgate.services.security.gate import (
    GateDecision,
    GateRequest,
    RateLimitedGate,
    Verdict,
    get_gate,
    set_gate,
)
from approvalgate.services.security.throttle import RedisBurstThrottle, ThrottleDecision

__all__ = [
    "AlertDispatcher",
    "build_alert_signature",
    "BlockThresholds",
    "next_tier_change",
    "tier_for_count",
    "CredentialValidator",
    "GateDecision",
    "GateRequest",
    "RateLimitedGate",
    "Verdict",
    "get_gate",
    "set_gate",
    "RedisBurstThrottle",
    "ThrottleDecision",
]
