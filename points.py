# =================================================================
#   Scout Troop Manager - Point System
# =================================================================

import copy

from org_settings import get_setting

DEFAULT_POINT_RULES = {
    'attendance': {
        'present': 1,
        'absent': 0,
        'late': 0,
        'excused': 0,
    },
    'honors': {
        'award': 5,
    },
    'badges': {
        'earn': 5,
        'level_up': 10,
    },
}


def _deep_merge(base, override):
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def get_point_system_rules(conn, organization_id):
    custom = get_setting(conn, organization_id, 'point_system_rules', fallback_to_shared=False)
    if isinstance(custom, dict):
        return _deep_merge(DEFAULT_POINT_RULES, custom)
    return copy.deepcopy(DEFAULT_POINT_RULES)


def calculate_attendance_points(previous_status, new_status, rules):
    """Point delta when an attendance mark moves from previous_status to new_status."""
    table = rules.get('attendance', {})
    previous_points = table.get(previous_status, 0) if previous_status else 0
    new_points = table.get(new_status, 0)
    return new_points - previous_points


def get_participant_group_id(conn, participant_id, organization_id):
    row = conn.execute(
        "SELECT group_id FROM participant_groups WHERE participant_id = ? AND organization_id = ?",
        (participant_id, organization_id)
    ).fetchone()
    return row['group_id'] if row else None


def add_points(conn, organization_id, value, participant_id=None, group_id=None):
    """Insert a point row. Caller commits."""
    conn.execute(
        "INSERT INTO points (participant_id, group_id, organization_id, value) VALUES (?, ?, ?, ?)",
        (participant_id, group_id, organization_id, value)
    )


def participant_total(conn, organization_id, participant_id):
    row = conn.execute(
        "SELECT COALESCE(SUM(value), 0) AS total FROM points WHERE organization_id = ? AND participant_id = ?",
        (organization_id, participant_id)
    ).fetchone()
    return row['total']


def group_total(conn, organization_id, group_id):
    """Group-level points only (rows without a participant)."""
    row = conn.execute(
        """SELECT COALESCE(SUM(value), 0) AS total FROM points
           WHERE organization_id = ? AND group_id = ? AND participant_id IS NULL""",
        (organization_id, group_id)
    ).fetchone()
    return row['total']
