"""
Audit logging for x402 payment events.

Every decision the payment gate takes is appended to a JSON lines file so
that disputes ("I paid but got a 402") can be resolved after the fact.

Log format: JSON lines (one event per line)
Log location: X402_AUDIT_LOG_PATH (auditing is off when unset)

Events logged:
- 402 returned (resource, price, reason)
- Payment verified on chain (payer, amount, signature)
- Payment accepted from the verification cache
- Payment rejected (reason)
- Chain lookup unavailable (503 returned)
"""
import json
import logging
import threading
import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

logger = logging.getLogger(__name__)


class AuditEventType(Enum):
    """Types of payment audit events."""
    PAYMENT_REQUIRED_SENT = "payment_required_sent"
    PAYMENT_VERIFIED = "payment_verified"
    PAYMENT_CACHE_HIT = "payment_cache_hit"
    PAYMENT_REJECTED = "payment_rejected"
    CHAIN_LOOKUP_UNAVAILABLE = "chain_lookup_unavailable"


def generate_request_id() -> str:
    """Generate a short request ID for correlating events."""
    return str(uuid.uuid4())[:8]


def create_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    client_ip: Optional[str] = None,
    wallet_address: Optional[str] = None,
    request_id: Optional[str] = None
) -> Dict[str, Any]:
    """Build an audit event ready to be written as one JSON line."""
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event_type": event_type.value,
        "request_id": request_id or generate_request_id(),
        "client_ip": client_ip,
        "wallet_address": wallet_address,
        "data": data
    }


class PaymentAuditLog:
    """Append-only JSON lines log of payment events."""

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self.path = Path(path) if path else None
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self.path is not None

    def record(
        self,
        event_type: AuditEventType,
        data: Dict[str, Any],
        client_ip: Optional[str] = None,
        wallet_address: Optional[str] = None,
        request_id: Optional[str] = None
    ) -> Optional[str]:
        """
        Append an event to the audit log.

        Returns:
            The request_id used for this event, or None when auditing is
            disabled or the write failed.
        """
        if not self.enabled:
            return None

        event = create_audit_event(event_type, data, client_ip, wallet_address, request_id)
        try:
            with self._lock:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with open(self.path, "a") as f:
                    f.write(json.dumps(event) + "\n")
        except OSError as e:
            # Auditing must never fail a paid request
            logger.error(f"Failed to write audit event: {e}")
            return None

        logger.debug(f"Audit event logged: {event_type.value} [{event['request_id']}]")
        return event["request_id"]

    def read(
        self,
        max_entries: Optional[int] = 100,
        event_type: Optional[AuditEventType] = None
    ) -> List[Dict[str, Any]]:
        """Read events, most recent first, optionally filtered by type."""
        if not self.enabled or not self.path.exists():
            return []

        events = []
        with open(self.path, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if event_type and event.get("event_type") != event_type.value:
                    continue
                events.append(event)

        events.reverse()
        return events if max_entries is None else events[:max_entries]

    def stats(self) -> Dict[str, Any]:
        """Event counts by type."""
        events_by_type: Dict[str, int] = {}
        events = self.read(max_entries=None)
        for event in events:
            key = event.get("event_type", "unknown")
            events_by_type[key] = events_by_type.get(key, 0) + 1
        return {
            "enabled": self.enabled,
            "total_events": len(events),
            "events_by_type": events_by_type,
        }
