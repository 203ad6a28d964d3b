"""
Audit trail for ledger mutations.
Money-moving and destructive actions (payments, refunds, suspensions, tenant
deletion) are written as JSON lines to a dedicated log file for later review.
"""
import json
import logging
import os
from datetime import datetime, timezone
from typing import Optional

from .config import get_settings
from .tenant import TenantContext

AUDIT_LOG_NAME = "audit.log"

# Dedicated audit logger
audit_logger = logging.getLogger("audit")
audit_logger.setLevel(logging.INFO)
audit_logger.propagate = False  # Don't duplicate to root logger


def _ensure_handler() -> None:
    if audit_logger.handlers:
        return
    log_dir = get_settings().audit_log_dir
    os.makedirs(log_dir, exist_ok=True)
    file_handler = logging.FileHandler(os.path.join(log_dir, AUDIT_LOG_NAME), encoding="utf-8")
    file_handler.setFormatter(logging.Formatter("%(message)s"))
    audit_logger.addHandler(file_handler)


def log_action(
    action: str,
    resource_type: str,
    resource_id,
    ctx: Optional[TenantContext] = None,
    details: Optional[dict] = None,
    status: str = "success",
) -> None:
    """
    Log a ledger action to the audit log.

    Args:
        action: The action performed (e.g., "PAYMENT", "REFUND", "DELETE")
        resource_type: Type of resource affected (e.g., "bill", "customer", "isp")
        resource_id: Identifier of the affected resource
        ctx: Tenant context of the caller (optional; None for scheduled jobs)
        details: Additional context dictionary (optional)
        status: "success" or "failure"
    """
    _ensure_handler()

    log_entry = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "action": action.upper(),
        "resource_type": resource_type,
        "resource_id": str(resource_id),
        "tenant_id": ctx.tenant_id if ctx else None,
        "super_operator": ctx.is_super_operator if ctx else False,
        "status": status,
    }

    if details:
        log_entry["details"] = details

    audit_logger.info(json.dumps(log_entry, ensure_ascii=False, default=str))
