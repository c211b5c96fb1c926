# =================================================================
#   Scout Troop Manager - Attendance Marking
# =================================================================

import logging

from points import add_points, calculate_attendance_points, get_participant_group_id, participant_total

logger = logging.getLogger(__name__)

VALID_STATUSES = ('present', 'absent', 'late', 'excused')
CARRY_FORWARD_STATUSES = ('present', 'late')


def mark_attendance(conn, organization_id, participant_id, status, date, rules):
    """
    Upsert one attendance mark and record the point adjustment it implies.
    Caller commits. Returns {'participant_id', 'previous_status', 'status', 'points', 'total_points'}.
    """
    existing = conn.execute(
        "SELECT status FROM attendance WHERE participant_id = ? AND organization_id = ? AND date = ?",
        (participant_id, organization_id, date)
    ).fetchone()
    previous_status = existing['status'] if existing else None

    conn.execute(
        """INSERT INTO attendance (participant_id, organization_id, date, status, previous_status, updated_at)
           VALUES (?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
           ON CONFLICT (participant_id, organization_id, date) DO UPDATE SET
             previous_status = attendance.status,
             status = excluded.status,
             updated_at = CURRENT_TIMESTAMP""",
        (participant_id, organization_id, date, status, previous_status)
    )

    delta = 0
    if previous_status != status:
        delta = calculate_attendance_points(previous_status, status, rules)
        if delta:
            group_id = get_participant_group_id(conn, participant_id, organization_id)
            add_points(conn, organization_id, delta, participant_id=participant_id, group_id=group_id)

    return {
        'participant_id': participant_id,
        'previous_status': previous_status,
        'status': status,
        'points': delta,
        'total_points': participant_total(conn, organization_id, participant_id),
    }


def carry_forward(conn, organization_id, from_date, to_date):
    """Copy present/late marks of from_date onto to_date where to_date has none. Caller commits."""
    cursor = conn.execute(
        f"""INSERT INTO attendance (participant_id, organization_id, date, status)
            SELECT a.participant_id, a.organization_id, ?, a.status
            FROM attendance a
            WHERE a.organization_id = ? AND a.date = ?
              AND a.status IN ({','.join('?' * len(CARRY_FORWARD_STATUSES))})
              AND NOT EXISTS (
                SELECT 1 FROM attendance t
                WHERE t.participant_id = a.participant_id AND t.organization_id = a.organization_id AND t.date = ?
              )""",
        (to_date, organization_id, from_date) + CARRY_FORWARD_STATUSES + (to_date,)
    )
    logger.info(f"Carried forward {cursor.rowcount} attendance marks from {from_date} to {to_date} (org {organization_id})")
    return cursor.rowcount
