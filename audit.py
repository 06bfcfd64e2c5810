"""
Audit logging for logins and registration decisions.

Entries record who did what to which registration, and from where.
"""

from typing import Optional, List, Dict, Any

from database import AuditEntry, RegistrationStore, write_audit


def log_action(
    store: RegistrationStore,
    actor_id: Optional[str],
    action: str,
    target_id: Optional[str] = None,
    details: Optional[str] = None,
    ip_address: Optional[str] = None
) -> None:
    """
    Log an audit action.

    Args:
        store: Store to write the entry to
        actor_id: Provider id of the user performing the action
        action: The type of action (e.g., 'login', 'logout', 'approve')
        target_id: Subject id the action applies to
        details: Additional details about the action
        ip_address: The IP address of the actor
    """
    entry = AuditEntry(
        action=action,
        actor_id=actor_id,
        target_id=target_id,
        details=details,
        ip_address=ip_address,
    )
    with store.pool.connection() as conn:
        write_audit(conn, entry)


def get_audit_logs(
    store: RegistrationStore,
    limit: int = 100,
    offset: int = 0,
    action: Optional[str] = None,
    actor_id: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """
    Retrieve audit log entries, newest first.

    Args:
        store: Store to read from
        limit: Maximum number of entries to return
        offset: Number of entries to skip
        action: Filter by action type
        actor_id: Filter by actor

    Returns:
        List of audit log entries as dictionaries
    """
    query = "SELECT * FROM audit_log WHERE 1=1"
    params = []

    if action:
        query += " AND action = ?"
        params.append(action)

    if actor_id:
        query += " AND actor_id = ?"
        params.append(actor_id)

    query += " ORDER BY timestamp DESC, id DESC LIMIT ? OFFSET ?"
    params.extend([limit, offset])

    with store.pool.connection() as conn:
        cursor = conn.execute(query, params)
        return [dict(row) for row in cursor.fetchall()]
