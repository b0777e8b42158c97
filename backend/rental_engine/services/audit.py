from __future__ import annotations
from typing import Any, Dict, List, Optional
from flask_jwt_extended import get_jwt_identity
from rental_engine import get_db
from rental_engine.models.audit import AuditLog


def _current_actor() -> Optional[int]:
    try:
        ident = get_jwt_identity()
    except RuntimeError:
        return None  # no request / JWT context (CLI sweep, direct service calls)
    return int(ident) if ident is not None else None


def add_audit(action: str, entity: Optional[str] = None, entity_id: Optional[str] = None, meta: Optional[Dict[str, Any]] = None, actor_user_id: Optional[int] = None):
    """Persist an audit log entry within the current DB session.

    Parameters:
      action: short action code e.g. TXN.APPROVE, TXN.RETURN, TXN.SETTLEMENT.PARTIAL
      entity: optional entity name (BorrowTransaction, Rating)
      entity_id: optional primary key string
      meta: additional JSON-safe dictionary (will be shallow copied)
      actor_user_id: explicit actor; defaults to the JWT identity, 0 for system actions
    """
    session = get_db()
    actor = actor_user_id if actor_user_id is not None else _current_actor()
    log = AuditLog(
        actor_user_id=actor or 0,
        action=action,
        entity=entity,
        entity_id=str(entity_id) if entity_id is not None else None,
        meta=dict(meta or {}),
    )
    session.add(log)
    # No commit here; caller's transaction boundary controls durability.
    return log


def entries_for(entity: str, entity_id: str, action: str) -> List[AuditLog]:
    """Audit entries of one action for one entity, oldest first."""
    return (
        get_db().query(AuditLog)
        .filter_by(entity=entity, entity_id=str(entity_id), action=action)
        .order_by(AuditLog.id)
        .all()
    )
