# =================================================================
#   Scout Troop Manager - Organization Settings
#   JSON key/value settings per organization; organization_id 0
#   holds the shared defaults.
# =================================================================

import copy
import json
import logging

logger = logging.getLogger(__name__)

SHARED_ORGANIZATION_ID = 0

DEFAULT_MEETING_SECTIONS = {
    'defaultSection': 'louveteaux',
    'sections': {
        'castors': {
            'label_key': 'section_castors',
            'honorField': 'youth_of_honor',
            'defaultDurationMinutes': 90,
        },
        'louveteaux': {
            'label_key': 'section_louveteaux',
            'honorField': 'youth_of_honor',
            'defaultDurationMinutes': 120,
        },
        'eclaireurs': {
            'label_key': 'section_eclaireurs',
            'honorField': 'youth_of_honor',
            'defaultDurationMinutes': 150,
        },
    },
}


def _parse(raw, key, org_id):
    if raw is None or raw == '':
        return None
    try:
        return json.loads(raw)
    except ValueError:
        logger.warning(f"Setting '{key}' for org {org_id} is not valid JSON, ignoring")
        return None


def get_setting(conn, organization_id, key, fallback_to_shared=True):
    """Parsed value of a setting, falling back to the shared row when asked."""
    org_ids = [organization_id, SHARED_ORGANIZATION_ID] if fallback_to_shared else [organization_id]
    for org_id in org_ids:
        row = conn.execute(
            "SELECT setting_value FROM organization_settings WHERE organization_id = ? AND setting_key = ?",
            (org_id, key)
        ).fetchone()
        value = _parse(row['setting_value'], key, org_id) if row else None
        if value is not None:
            return value
    return None


def get_all_settings(conn, organization_id):
    rows = conn.execute(
        "SELECT setting_key, setting_value FROM organization_settings WHERE organization_id = ? ORDER BY setting_key",
        (organization_id,)
    ).fetchall()
    settings = {}
    for row in rows:
        parsed = _parse(row['setting_value'], row['setting_key'], organization_id)
        settings[row['setting_key']] = parsed if parsed is not None else row['setting_value']
    return settings


def set_setting(conn, organization_id, key, value):
    """Upsert a setting. Caller commits."""
    conn.execute(
        """INSERT INTO organization_settings (organization_id, setting_key, setting_value, updated_at)
           VALUES (?, ?, ?, CURRENT_TIMESTAMP)
           ON CONFLICT (organization_id, setting_key) DO UPDATE SET
             setting_value = excluded.setting_value, updated_at = CURRENT_TIMESTAMP""",
        (organization_id, key, json.dumps(value))
    )


def merge_meeting_section_config(custom):
    custom = custom if isinstance(custom, dict) else {}
    sections = copy.deepcopy(DEFAULT_MEETING_SECTIONS['sections'])
    sections.update(custom.get('sections') or {})
    default_section = (custom.get('defaultSection')
                       or DEFAULT_MEETING_SECTIONS.get('defaultSection')
                       or next(iter(sections), None))
    return {'defaultSection': default_section, 'sections': sections}


def get_meeting_section_config(conn, organization_id):
    return merge_meeting_section_config(get_setting(conn, organization_id, 'meeting_sections'))
