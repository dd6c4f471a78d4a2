"""
Audit logging for x402 transactions.

This module logs every decision the payment gate takes, for:
- Dispute resolution
- Financial reconciliation
- Tracing a chained payment back through every leg

Log format: JSON lines (one event per line)
Log location: Configured via X402_AUDIT_LOG_PATH
Disabled entirely with X402_AUDIT_ENABLED=false

Events logged:
- Request received (timestamp, client IP, route, method)
- Recipient unavailable (resolver failure)
- 402 returned (amount, network, payTo)
- Payment received (payer, amount, network)
- Payment rejected (malformed, requirement mismatch, replay)
- Payment verified (facilitator verdict)
- Payment settled (transaction reference)
- Payment failed (stage, reason)
- Downstream payment (chained leg: who paid whom, how much)
- Error (type, context)

A failure to write the audit log is logged and never fails the request.
"""
import json
import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Any, Optional
from enum import Enum

from app.core.config import settings

logger = logging.getLogger(__name__)


class AuditEventType(Enum):
    """Types of audit events that can be logged."""
    REQUEST_RECEIVED = "request_received"
    RECIPIENT_UNAVAILABLE = "recipient_unavailable"
    PAYMENT_REQUIRED_SENT = "payment_required_sent"
    PAYMENT_RECEIVED = "payment_received"
    PAYMENT_REJECTED = "payment_rejected"
    PAYMENT_VERIFIED = "payment_verified"
    PAYMENT_SETTLED = "payment_settled"
    PAYMENT_FAILED = "payment_failed"
    DOWNSTREAM_PAYMENT = "downstream_payment"
    ERROR = "error"


def generate_request_id() -> str:
    """Generate a unique request ID for tracking."""
    return str(uuid.uuid4())[:8]


def get_audit_log_path() -> Path:
    """Get the path to the audit log file."""
    return Path(settings.X402_AUDIT_LOG_PATH)


def ensure_audit_log_directory() -> bool:
    """
    Ensure the audit log directory exists.

    Returns:
        True if directory exists or was created, False on error
    """
    try:
        log_dir = get_audit_log_path().parent
        if not log_dir.exists():
            log_dir.mkdir(parents=True, exist_ok=True)
            logger.info(f"Created audit log directory: {log_dir}")
        return True
    except OSError as e:
        logger.error(f"Failed to create audit log directory: {e}")
        return False


def create_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    client_ip: Optional[str] = None,
    wallet_address: Optional[str] = None,
    request_id: Optional[str] = None
) -> Dict[str, Any]:
    """
    Create an audit event dictionary.

    Args:
        event_type: Type of event to log
        data: Event-specific data
        client_ip: Client IP address (if available)
        wallet_address: Payer wallet address (if available)
        request_id: Unique request identifier (if available)

    Returns:
        A structured event ready to be written to the audit log
    """
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event_type": event_type.value,
        "request_id": request_id or generate_request_id(),
        "client_ip": client_ip,
        "wallet_address": wallet_address,
        "data": data
    }


def log_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    client_ip: Optional[str] = None,
    wallet_address: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """
    Append an audit event to the x402 audit log.

    Returns:
        The request_id used for this event, or None when auditing is
        disabled or the write failed
    """
    if not settings.X402_AUDIT_ENABLED:
        return None

    event = create_audit_event(
        event_type=event_type,
        data=data,
        client_ip=client_ip,
        wallet_address=wallet_address,
        request_id=request_id
    )

    try:
        ensure_audit_log_directory()

        with open(get_audit_log_path(), "a") as f:
            f.write(json.dumps(event) + "\n")

        logger.debug(f"Audit event logged: {event_type.value} [{event['request_id']}]")
        return event["request_id"]

    except (OSError, TypeError, ValueError) as e:
        logger.error(f"Failed to write audit event: {e}")
        return None


# Convenience functions for specific event types

def log_request_received(
    client_ip: str,
    method: str,
    path: str,
    route_key: str,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a request for a priced route."""
    return log_audit_event(
        event_type=AuditEventType.REQUEST_RECEIVED,
        data={
            "method": method,
            "path": path,
            "route_key": route_key,
        },
        client_ip=client_ip,
        request_id=request_id
    )


def log_recipient_unavailable(
    client_ip: str,
    route_key: str,
    reason: str,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a failed recipient resolution."""
    return log_audit_event(
        event_type=AuditEventType.RECIPIENT_UNAVAILABLE,
        data={
            "route_key": route_key,
            "reason": reason,
        },
        client_ip=client_ip,
        request_id=request_id
    )


def log_payment_required_sent(
    client_ip: str,
    amount: str,
    network: str,
    pay_to: str,
    resource: str,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a 402 Payment Required response event."""
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_REQUIRED_SENT,
        data={
            "amount": amount,
            "network": network,
            "pay_to": pay_to,
            "resource": resource,
        },
        client_ip=client_ip,
        request_id=request_id
    )


def log_payment_received(
    client_ip: str,
    payer: str,
    amount: str,
    network: str,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a decoded payment."""
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_RECEIVED,
        data={
            "amount": amount,
            "network": network,
        },
        client_ip=client_ip,
        wallet_address=payer,
        request_id=request_id
    )


def log_payment_rejected(
    client_ip: str,
    error_code: str,
    reason: Optional[str],
    payer: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a payment rejected by the gate before or by verification."""
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_REJECTED,
        data={
            "error_code": error_code,
            "reason": reason,
        },
        client_ip=client_ip,
        wallet_address=payer,
        request_id=request_id
    )


def log_payment_verified(
    client_ip: str,
    payer: str,
    is_valid: bool,
    invalid_reason: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a facilitator verification verdict."""
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_VERIFIED,
        data={
            "is_valid": is_valid,
            "invalid_reason": invalid_reason,
        },
        client_ip=client_ip,
        wallet_address=payer,
        request_id=request_id
    )


def log_payment_settled(
    client_ip: str,
    payer: str,
    transaction: Optional[str],
    network: str,
    success: bool,
    error_reason: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a payment settlement event."""
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_SETTLED,
        data={
            "success": success,
            "transaction": transaction,
            "network": network,
            "error_reason": error_reason,
        },
        client_ip=client_ip,
        wallet_address=payer,
        request_id=request_id
    )


def log_payment_failed(
    client_ip: str,
    reason: str,
    stage: str,
    wallet_address: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log a payment that could not be completed because of infrastructure."""
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_FAILED,
        data={
            "reason": reason,
            "stage": stage,
        },
        client_ip=client_ip,
        wallet_address=wallet_address,
        request_id=request_id
    )


def log_downstream_payment(
    payer: str,
    service_id: str,
    pay_to: Optional[str],
    amount: Optional[str],
    network: Optional[str],
    success: bool,
    transaction: Optional[str] = None,
    stage: Optional[str] = None,
    reason: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log one leg of a chained payment made by this service."""
    return log_audit_event(
        event_type=AuditEventType.DOWNSTREAM_PAYMENT,
        data={
            "service_id": service_id,
            "pay_to": pay_to,
            "amount": amount,
            "network": network,
            "success": success,
            "transaction": transaction,
            "stage": stage,
            "reason": reason,
        },
        wallet_address=payer,
        request_id=request_id
    )


def log_error(
    client_ip: str,
    error_type: str,
    error_message: str,
    context: Optional[Dict[str, Any]] = None,
    wallet_address: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """Log an error event."""
    return log_audit_event(
        event_type=AuditEventType.ERROR,
        data={
            "error_type": error_type,
            "error_message": error_message,
            "context": context or {},
        },
        client_ip=client_ip,
        wallet_address=wallet_address,
        request_id=request_id
    )


def read_audit_log(
    max_entries: int = 100,
    event_type: Optional[AuditEventType] = None,
    request_id: Optional[str] = None
) -> list:
    """
    Read entries from the audit log.

    Args:
        max_entries: Maximum number of entries to return
        event_type: Filter by event type (optional)
        request_id: Filter by request (optional), e.g. to trace one payment

    Returns:
        List of audit events (most recent first)
    """
    log_path = get_audit_log_path()
    if not log_path.exists():
        return []

    events = []
    try:
        with open(log_path, "r") as f:
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
                if request_id and event.get("request_id") != request_id:
                    continue
                events.append(event)
    except OSError as e:
        logger.error(f"Failed to read audit log: {e}")
        return []

    return list(reversed(events))[:max_entries]


def get_audit_stats() -> Dict[str, Any]:
    """
    Get statistics from the audit log.

    Returns:
        Dict with event counts and first/last event timestamps
    """
    log_path = get_audit_log_path()
    stats: Dict[str, Any] = {
        "total_events": 0,
        "events_by_type": {},
        "first_event": None,
        "last_event": None,
        "log_path": str(log_path),
        "log_exists": log_path.exists(),
    }
    if not stats["log_exists"]:
        return stats

    for event in reversed(read_audit_log(max_entries=10 ** 9)):
        stats["total_events"] += 1
        event_type = event.get("event_type", "unknown")
        stats["events_by_type"][event_type] = stats["events_by_type"].get(event_type, 0) + 1

        timestamp = event.get("timestamp")
        if timestamp:
            if stats["first_event"] is None:
                stats["first_event"] = timestamp
            stats["last_event"] = timestamp

    return stats
