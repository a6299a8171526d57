"""rxguard configuration.

Environment-based constants grouped by concern, plus :class:`EngineConfig`,
the explicit configuration struct handed to each engine component at
construction. Components never read the environment themselves.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from rxguard.disclosure.frames import (
    DEFAULT_FRAMES,
    DisclosureFrame,
    DisclosureFrameName,
    validate_frames,
)
from rxguard.fraud.scoring import FraudWeights, RiskThresholds

log = logging.getLogger(__name__)


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        log.warning(f"Invalid {name}={raw!r}, using default {default}")
        return default


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        log.warning(f"Invalid {name}={raw!r}, using default {default}")
        return default


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _get_json_mapping(name: str) -> dict[str, Any]:
    """Parse a JSON object from the environment. Invalid JSON is a config error."""
    raw = os.getenv(name)
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"{name} is not valid JSON: {e}")
    if not isinstance(value, dict):
        raise ValueError(f"{name} must be a JSON object")
    return value


# =============================================================================
# COLLABORATORS
# =============================================================================

# External signer/KMS. Empty means no remote signer is configured.
KMS_URL: str = os.getenv("RXGUARD_KMS_URL", "")
KMS_TIMEOUT_SECONDS: float = _get_float("RXGUARD_KMS_TIMEOUT", 10.0)

# Identity document resolver (universal-resolver style /identifiers/{did}).
DID_RESOLVER_URL: str = os.getenv("RXGUARD_DID_RESOLVER_URL", "")
DID_RESOLVER_TIMEOUT_SECONDS: float = _get_float("RXGUARD_DID_RESOLVER_TIMEOUT", 5.0)

# Upper bound for any single collaborator call made by the engine.
COLLABORATOR_TIMEOUT_SECONDS: float = _get_float("RXGUARD_COLLABORATOR_TIMEOUT", 15.0)


# =============================================================================
# POLICY
# =============================================================================

# Claims with a fraud score at or above this value are denied.
MAX_APPROVAL_SCORE: int = _get_int("RXGUARD_MAX_APPROVAL_SCORE", 50)

RISK_MEDIUM_THRESHOLD: int = _get_int("RXGUARD_RISK_MEDIUM_THRESHOLD", 25)
RISK_HIGH_THRESHOLD: int = _get_int("RXGUARD_RISK_HIGH_THRESHOLD", 50)


# =============================================================================
# OPERATIONAL
# =============================================================================

# JSON seed file for the in-memory actor registry.
ACTOR_REGISTRY_PATH: str = os.getenv("RXGUARD_ACTOR_REGISTRY_PATH", "")

AUDIT_ENABLED: bool = _get_bool("RXGUARD_AUDIT_ENABLED", True)


@dataclass(frozen=True)
class ApprovalThresholds:
    max_score: int = 50

    def __post_init__(self):
        if not 0 < self.max_score <= 100:
            raise ValueError("max_score must be in (0, 100]")


@dataclass(frozen=True)
class EngineConfig:
    """Explicit configuration for the engine components."""

    disclosure_frames: Mapping[DisclosureFrameName, DisclosureFrame] = field(
        default_factory=lambda: dict(DEFAULT_FRAMES)
    )
    fraud_weights: FraudWeights = field(default_factory=FraudWeights)
    approval_thresholds: ApprovalThresholds = field(default_factory=ApprovalThresholds)
    risk_thresholds: RiskThresholds = field(default_factory=RiskThresholds)
    collaborator_timeout_seconds: Optional[float] = 15.0

    def __post_init__(self):
        validate_frames(self.disclosure_frames)

    def frame(self, name: DisclosureFrameName) -> DisclosureFrame:
        return self.disclosure_frames[name]

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Build from the module-level environment constants."""
        return cls(
            fraud_weights=FraudWeights.from_mapping(_get_json_mapping("RXGUARD_FRAUD_WEIGHTS")),
            approval_thresholds=ApprovalThresholds(max_score=MAX_APPROVAL_SCORE),
            risk_thresholds=RiskThresholds(
                medium=RISK_MEDIUM_THRESHOLD, high=RISK_HIGH_THRESHOLD
            ),
            collaborator_timeout_seconds=COLLABORATOR_TIMEOUT_SECONDS,
        )
