# =================================================================
#   Scout Troop Manager - Organization & Permission Resolution
#   Resolves the tenant of a request and the caller's roles,
#   permissions and data scope inside that tenant.
# =================================================================

import json
import logging
import sqlite3

from roles import ROLE_PRIORITY, DEMO_ROLES, map_legacy_role

logger = logging.getLogger(__name__)


class OrganizationNotFoundError(Exception):
    """Raised when no organization can be resolved for a request."""

    def __init__(self, hostname=None):
        self.hostname = hostname
        super().__init__(f"No organization found for host '{hostname}'")


def _to_int(value):
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def get_current_organization_id(conn, headers, host):
    """
    Resolve the organization from the X-Organization-ID header, then from
    the request hostname registered in organization_domains.
    """
    header_org = _to_int(headers.get('X-Organization-ID'))
    if header_org:
        return header_org

    hostname = (host or '').split(':')[0].lower()
    if hostname:
        row = conn.execute(
            "SELECT organization_id FROM organization_domains WHERE domain = ?",
            (hostname,)
        ).fetchone()
        if row:
            return row['organization_id']

    raise OrganizationNotFoundError(hostname)


def resolve_organization_id(conn, token_org_id, headers, args, body, host):
    """
    The organization carried by the JWT always wins. Explicit overrides that
    disagree with it are ignored and logged.
    """
    candidates = {
        'header': _to_int(headers.get('X-Organization-ID')),
        'query': _to_int(args.get('organization_id')),
        'body': _to_int((body or {}).get('organization_id')) if isinstance(body, dict) else None,
    }

    token_org_id = _to_int(token_org_id)
    if token_org_id:
        for source, value in candidates.items():
            if value and value != token_org_id:
                logger.warning(
                    f"[AUTH] Ignoring organization override from {source}: "
                    f"{value} (token organization {token_org_id})"
                )
        return token_org_id

    for value in candidates.values():
        if value:
            return value

    return get_current_organization_id(conn, headers, host)


def get_role_names(conn, role_ids):
    if not role_ids:
        return []
    placeholders = ','.join('?' * len(role_ids))
    rows = conn.execute(
        f"SELECT role_name FROM roles WHERE id IN ({placeholders})", tuple(role_ids)
    ).fetchall()
    return [row['role_name'] for row in rows]


def get_role_ids(conn, role_names):
    names = [map_legacy_role(name) for name in role_names]
    if not names:
        return []
    placeholders = ','.join('?' * len(names))
    rows = conn.execute(
        f"SELECT id FROM roles WHERE role_name IN ({placeholders})", tuple(names)
    ).fetchall()
    return [row['id'] for row in rows]


def get_permissions_for_roles(conn, role_ids):
    if not role_ids:
        return []
    placeholders = ','.join('?' * len(role_ids))
    rows = conn.execute(
        f"""SELECT DISTINCT p.permission_key
            FROM role_permissions rp
            JOIN permissions p ON p.id = rp.permission_id
            WHERE rp.role_id IN ({placeholders})
            ORDER BY p.permission_key""",
        tuple(role_ids)
    ).fetchall()
    return [row['permission_key'] for row in rows]


def get_primary_role(role_names):
    """Return the highest-priority role, or the first unknown one."""
    for candidate in ROLE_PRIORITY:
        if candidate in role_names:
            return map_legacy_role(candidate)
    return role_names[0] if role_names else None


def get_user_data_scope(conn, role_names):
    """'organization' if any role grants it, otherwise 'linked'."""
    if not role_names:
        return 'linked'
    placeholders = ','.join('?' * len(role_names))
    rows = conn.execute(
        f"SELECT data_scope FROM roles WHERE role_name IN ({placeholders})",
        tuple(role_names)
    ).fetchall()
    if any(row['data_scope'] == 'organization' for row in rows):
        return 'organization'
    return 'linked'


def is_demo_user(role_names):
    return any(role in DEMO_ROLES for role in role_names)


def verify_organization_membership(conn, user_id, organization_id,
                                   required_roles=None, required_permissions=None):
    """
    Check that a user belongs to an organization and holds the requested
    roles and permissions.

    Returns a dict: authorized, role (primary), roles, permissions, message
    and, on a permission failure, missing.
    """
    result = {
        'authorized': False,
        'role': None,
        'roles': [],
        'permissions': [],
        'message': None,
    }

    try:
        membership = conn.execute(
            "SELECT role_ids FROM user_organizations WHERE user_id = ? AND organization_id = ?",
            (user_id, organization_id)
        ).fetchone()

        if not membership:
            result['message'] = 'User not a member of this organization'
            return result

        role_ids = json.loads(membership['role_ids'] or '[]')
        role_names = get_role_names(conn, role_ids)
        permissions = get_permissions_for_roles(conn, role_ids)

        result['roles'] = role_names
        result['role'] = get_primary_role(role_names)
        result['permissions'] = permissions

        if required_roles:
            wanted = {map_legacy_role(r) for r in required_roles}
            if not wanted.intersection(role_names):
                result['message'] = 'Insufficient role'
                return result

        if required_permissions:
            missing = [p for p in required_permissions if p not in permissions]
            if missing:
                result['message'] = 'Insufficient permissions'
                result['missing'] = missing
                return result

        result['authorized'] = True
        return result

    except (sqlite3.Error, ValueError) as e:
        logger.error(f"[AUTH] Membership check failed for user {user_id} in org {organization_id}: {e}")
        result['message'] = 'Authorization check failed'
        return result


def user_has_access_to_participant(conn, user_id, participant_id, organization_id, data_scope):
    """Staff scope needs the participant in the org; linked scope needs a user_participants row."""
    in_org = conn.execute(
        "SELECT 1 FROM participant_organizations WHERE participant_id = ? AND organization_id = ?",
        (participant_id, organization_id)
    ).fetchone()
    if not in_org:
        return False
    if data_scope == 'organization':
        return True
    linked = conn.execute(
        "SELECT 1 FROM user_participants WHERE user_id = ? AND participant_id = ?",
        (user_id, participant_id)
    ).fetchone()
    return linked is not None
