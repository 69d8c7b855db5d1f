"""
Audit trail emission.

Audit records go to the ``oldmanfooty.audit`` logger with structured
``extra`` fields; whatever handler is attached there owns persistence.
"""

import logging
from typing import Any, Dict, Optional

audit_logger = logging.getLogger("oldmanfooty.audit")

# Action names
USER_LOGIN = "USER_LOGIN"
USER_INVITED = "USER_INVITED"
INVITATION_ACCEPTED = "INVITATION_ACCEPTED"
PRIMARY_DELEGATE_TRANSFERRED = "PRIMARY_DELEGATE_TRANSFERRED"
CLUB_CLAIMED = "CLUB_CLAIMED"
CLUB_REACTIVATED = "CLUB_REACTIVATED"
CARNIVAL_CLAIMED = "CARNIVAL_CLAIMED"
CARNIVAL_RELEASED = "CARNIVAL_RELEASED"
CARNIVAL_MERGED = "CARNIVAL_MERGED"


def log_user_action(
    action: str,
    user_id: Optional[int] = None,
    entity_type: Optional[str] = None,
    entity_id: Optional[int] = None,
    result: str = "SUCCESS",
    reason: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Emit one audit record and return it."""
    record = {
        "action": action,
        "user_id": user_id,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "result": result,
        "reason": reason,
        "metadata": metadata or {},
    }
    level = logging.INFO if result == "SUCCESS" else logging.WARNING
    audit_logger.log(
        level,
        "%s %s user=%s %s=%s%s",
        action,
        result,
        user_id,
        entity_type or "entity",
        entity_id,
        f" reason={reason}" if reason else "",
        extra={"audit": record},
    )
    return record
