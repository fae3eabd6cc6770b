"""
In-memory admission stats tracker.

Counts requests allowed, denied and challenged per service, plus a short
history of recent admissions. Per process; not shared between instances.
"""

from __future__ import annotations

import time
from collections import Counter
from dataclasses import dataclass
from typing import Any, Dict, List, Optional


@dataclass
class AdmissionRecord:
    """A single admitted (paid) request."""
    service: str
    client_id: str
    payment_hash: Optional[str]
    timestamp: float  # milliseconds since epoch


class ProxyStats:
    """In-memory admission statistics."""

    def __init__(self, max_recent: int = 100):
        self.max_recent = max_recent

        # Totals
        self.total_requests: int = 0
        self.total_allowed: int = 0
        self.total_denied: int = 0
        self.total_challenges: int = 0
        self.total_mint_failures: int = 0
        self.challenged_msat: int = 0

        # Per-service: name → { requests, allowed, denied, free, challenges, mint_failures }
        self._services: Dict[str, Dict[str, int]] = {}

        # Deny reason → count
        self._deny_reasons: Counter = Counter()

        # Recent admissions (ring buffer)
        self._recent: List[AdmissionRecord] = []

    def _service(self, service: str) -> Dict[str, int]:
        if service not in self._services:
            self._services[service] = {
                "requests": 0, "allowed": 0, "denied": 0, "free": 0,
                "challenges": 0, "mint_failures": 0,
            }
        return self._services[service]

    def record_allowed(
        self,
        service: str,
        client_id: str,
        payment_hash: Optional[str] = None,
        free: bool = False,
    ) -> None:
        """
        Record a request forwarded to its backend.

        Args:
            service: Service name.
            client_id: Client address.
            payment_hash: Payment hash of the macaroon used, if any.
            free: Forwarded without a macaroon (auth off or freebie).
        """
        self.total_requests += 1
        self.total_allowed += 1
        entry = self._service(service)
        entry["requests"] += 1
        entry["allowed"] += 1

        if free:
            entry["free"] += 1
            return

        self._recent.append(
            AdmissionRecord(
                service=service,
                client_id=client_id,
                payment_hash=payment_hash,
                timestamp=time.time() * 1000,
            )
        )
        if len(self._recent) > self.max_recent:
            self._recent = self._recent[-self.max_recent:]

    def record_denied(self, service: str, reason: str) -> None:
        self.total_requests += 1
        self.total_denied += 1
        self._service(service)["requests"] += 1
        self._service(service)["denied"] += 1
        self._deny_reasons[reason] += 1

    def record_challenge(self, service: str, amount_msat: int) -> None:
        self.total_challenges += 1
        self.challenged_msat += amount_msat
        self._service(service)["challenges"] += 1

    def record_mint_failure(self, service: str) -> None:
        self.total_mint_failures += 1
        self._service(service)["mint_failures"] += 1

    def to_dict(self) -> Dict[str, Any]:
        """Stats summary as a plain dict."""
        recent = [
            {
                "service": r.service,
                "clientId": r.client_id,
                "paymentHash": r.payment_hash,
                "timestamp": r.timestamp,
            }
            for r in self._recent[-20:]
        ]
        recent.reverse()

        return {
            "totalRequests": self.total_requests,
            "totalAllowed": self.total_allowed,
            "totalDenied": self.total_denied,
            "totalChallenges": self.total_challenges,
            "totalMintFailures": self.total_mint_failures,
            "challengedMsat": self.challenged_msat,
            "denyReasons": dict(self._deny_reasons),
            "services": {name: dict(data) for name, data in self._services.items()},
            "recentAdmissions": recent,
        }
