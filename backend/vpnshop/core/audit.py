"""
Audit logging for money movements and staff actions.

Every balance change, staff action, broadcast run and ticket transition is
written as one JSON line to the ``audit`` logger so it can be shipped and
searched separately from application logs.
"""
import logging
import json
from datetime import datetime
from typing import Any, Optional, Dict

# Separate logger for audit events (can be shipped to centralized logging)
audit_logger = logging.getLogger("audit")


def _emit(entry: Dict[str, Any], level: int = logging.INFO) -> None:
    entry.setdefault("timestamp", datetime.utcnow().isoformat())
    audit_logger.log(level, json.dumps(entry, default=str, ensure_ascii=False))


class AuditLog:
    """Central audit logging for balance and staff events."""

    @staticmethod
    def log_balance_change(
        telegram_id: int,
        amount: float,
        tx_type: str,  # "top_up", "purchase", "refund", "referral_bonus", "promo_bonus", "manual_deposit"
        balance_after: float,
        details: Optional[Dict[str, Any]] = None,
    ):
        """
        Usage:
            AuditLog.log_balance_change(123, -450, "purchase", 550.0)
            AuditLog.log_balance_change(123, 450, "refund", 1000.0, {"reason": "provisioning failed"})
        """
        entry = {
            "timestamp": datetime.utcnow().isoformat(),
            "event_type": f"balance.{tx_type}",
            "telegram_id": telegram_id,
            "amount": amount,
            "balance_after": balance_after,
        }
        if details:
            entry["details"] = details
        _emit(entry)

    @staticmethod
    def log_admin_action(
        action: str,  # "issue_key", "gift", "add_balance", "promo_create", "promo_delete", "flash_sale_start", ...
        admin_id: int,
        target_id: Optional[int] = None,
        changes: Optional[Dict[str, Any]] = None,
    ):
        entry = {
            "timestamp": datetime.utcnow().isoformat(),
            "event_type": f"admin.{action}",
            "admin_id": admin_id,
        }
        if target_id is not None:
            entry["target_id"] = target_id
        if changes:
            entry["changes"] = changes
        _emit(entry)

    @staticmethod
    def log_broadcast(
        stage: str,  # "launch", "cancel", "finish"
        label: str,
        initiator_id: int,
        counts: Optional[Dict[str, Any]] = None,
    ):
        entry = {
            "timestamp": datetime.utcnow().isoformat(),
            "event_type": f"{label}.{stage}",
            "initiator_id": initiator_id,
        }
        if counts:
            entry.update(counts)
        _emit(entry)

    @staticmethod
    def log_ticket(
        action: str,  # "open", "message", "reply", "close"
        user_id: int,
        actor_id: Optional[int] = None,
    ):
        entry = {
            "timestamp": datetime.utcnow().isoformat(),
            "event_type": f"ticket.{action}",
            "user_id": user_id,
        }
        if actor_id is not None:
            entry["actor_id"] = actor_id
        _emit(entry)

    @staticmethod
    def log_access_denied(actor_id: int, trigger: str, reason: str = "not staff"):
        """Non-staff actor hit a staff-only trigger."""
        entry = {
            "timestamp": datetime.utcnow().isoformat(),
            "event_severity": "WARNING",
            "event_type": "access_denied",
            "actor_id": actor_id,
            "trigger": trigger,
            "reason": reason,
        }
        _emit(entry, logging.WARNING)
