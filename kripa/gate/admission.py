"""Admission gate consulted before retrieval runs.

Two checks:

1. Header heuristics: automation user agents and requests missing headers
   every interactive browser sends are rejected.
2. Timed challenge: a client must round-trip a timestamp within the
   challenge window; passing is remembered per fingerprint for a while.

This is a throughput and abuse deterrent, not a security boundary. Every
signal here is trivially forgeable by a determined client.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum

from kripa.config import GateConfig
from kripa.observability import record_counter
from kripa.observability.metrics import gate_decisions_total

logger = logging.getLogger(__name__)


class GateReason(str, Enum):
    """Why the gate decided as it did."""

    ALLOWED = "allowed"
    BOT_USER_AGENT = "bot_user_agent"
    MISSING_HEADERS = "missing_headers"
    UNVERIFIED = "unverified"
    STALE_CHALLENGE = "stale_challenge"


_MESSAGES = {
    GateReason.ALLOWED: "Human verification successful",
    GateReason.BOT_USER_AGENT: "Bot detected",
    GateReason.MISSING_HEADERS: "Missing browser headers",
    GateReason.UNVERIFIED: "Please complete human verification before searching",
    GateReason.STALE_CHALLENGE: "Invalid timestamp",
}


@dataclass(frozen=True)
class GateDecision:
    """Gate outcome."""

    allowed: bool
    reason: GateReason

    @property
    def message(self) -> str:
        return _MESSAGES[self.reason]


class VerificationRegistry:
    """Fingerprints that recently passed the timed challenge."""

    def __init__(self, ttl_seconds: float = 30 * 60.0) -> None:
        self.ttl_seconds = ttl_seconds
        self._verified_until: dict[str, float] = {}

    def mark_verified(self, fingerprint: str, now: float) -> None:
        self._verified_until[fingerprint] = now + self.ttl_seconds
        self.purge(now)

    def is_verified(self, fingerprint: str, now: float) -> bool:
        expires = self._verified_until.get(fingerprint)
        return expires is not None and expires > now

    def purge(self, now: float) -> int:
        """Forget expired verifications."""
        expired = [fp for fp, until in self._verified_until.items() if until <= now]
        for fp in expired:
            del self._verified_until[fp]
        return len(expired)

    def __len__(self) -> int:
        return len(self._verified_until)


def _lower_keys(headers: Mapping[str, str]) -> dict[str, str]:
    return {key.lower(): value for key, value in headers.items()}


class AdmissionGate:
    """Pass/fail predicate combining header heuristics and the timed challenge."""

    def __init__(self, config: GateConfig, registry: VerificationRegistry | None = None) -> None:
        """Initialize gate.

        Args:
            config: Gate configuration
            registry: Verification memory (one is created from the TTL otherwise)
        """
        self.config = config
        self.registry = registry or VerificationRegistry(config.verification_ttl_seconds)
        self._bot_patterns = [pattern.lower() for pattern in config.bot_patterns]

    def check_headers(self, headers: Mapping[str, str]) -> GateDecision:
        """Apply the header heuristics only."""
        normalized = _lower_keys(headers)
        user_agent = normalized.get("user-agent", "").lower()

        if any(pattern in user_agent for pattern in self._bot_patterns):
            return GateDecision(False, GateReason.BOT_USER_AGENT)

        if any(not normalized.get(name.lower()) for name in self.config.required_headers):
            return GateDecision(False, GateReason.MISSING_HEADERS)

        return GateDecision(True, GateReason.ALLOWED)

    def evaluate(
        self,
        headers: Mapping[str, str],
        fingerprint: str,
        now: float | None = None,
    ) -> GateDecision:
        """Decide whether a retrieval request may run.

        Args:
            headers: Request headers
            fingerprint: Client fingerprint carrying the challenge state
            now: Current epoch seconds

        Returns:
            GateDecision with the rejection reason, if any
        """
        now = time.time() if now is None else now
        decision = self.check_headers(headers)

        if (
            decision.allowed
            and self.config.require_verification
            and not self.registry.is_verified(fingerprint, now)
        ):
            decision = GateDecision(False, GateReason.UNVERIFIED)

        self._observe(decision)
        return decision

    def is_allowed(
        self,
        headers: Mapping[str, str],
        fingerprint: str,
        now: float | None = None,
    ) -> bool:
        return self.evaluate(headers, fingerprint, now).allowed

    def verify_challenge(
        self,
        fingerprint: str,
        headers: Mapping[str, str],
        issued_at_ms: float,
        now: float | None = None,
    ) -> GateDecision:
        """Complete the timed challenge.

        Args:
            fingerprint: Client fingerprint
            headers: Request headers
            issued_at_ms: Client timestamp of challenge issuance (epoch ms)
            now: Current epoch seconds

        Returns:
            GateDecision; on success the fingerprint is remembered as verified
        """
        now = time.time() if now is None else now
        decision = self.check_headers(headers)

        if decision.allowed and abs(now * 1000.0 - issued_at_ms) > self.config.challenge_window_seconds * 1000.0:
            decision = GateDecision(False, GateReason.STALE_CHALLENGE)

        if decision.allowed:
            self.registry.mark_verified(fingerprint, now)
            logger.debug(f"Human verification passed for fp={fingerprint[:8]}")

        self._observe(decision)
        return decision

    @staticmethod
    def _observe(decision: GateDecision) -> None:
        gate_decisions_total.labels(reason=decision.reason.value).inc()
        if not decision.allowed:
            record_counter("gate.rejections", 1, {"reason": decision.reason.value})
            logger.info(f"Admission gate rejected request: {decision.reason.value}")
