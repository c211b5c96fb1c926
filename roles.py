# =================================================================
#   Scout Troop Manager - Role Bundles and Permission Catalogue
#   Seeded into the roles / permissions tables by database_setup.py
# =================================================================

SHARED_ADMIN_PERMISSIONS = [
    "users.view",
    "users.edit",
    "users.delete",
    "users.assign_roles",
    "users.invite",
    "roles.view",
    "groups.view",
    "groups.create",
    "groups.edit",
    "groups.delete",
    "participants.view",
    "participants.edit",
    "participants.create",
    "participants.delete",
    "participants.transfer",
    "attendance.view",
    "attendance.manage",
    "communications.send",
    "reports.view",
    "points.manage",
    "points.view",
    "badges.view",
    "badges.approve",
    "badges.manage",
    "forms.view",
    "forms.create",
    "forms.edit",
    "forms.manage",
]

DISTRICT_PERMISSIONS = SHARED_ADMIN_PERMISSIONS + [
    "roles.manage",
    "users.assign_district",
    "import.sisc",
    "org.create",
    "org.edit",
    "org.view",
]

# role name -> bundle definition
ROLE_BUNDLES = {
    "district": {
        "display_name": "District Admin",
        "permissions": DISTRICT_PERMISSIONS,
        "data_scope": "organization",
    },
    "unitadmin": {
        "display_name": "Unit Admin",
        "permissions": SHARED_ADMIN_PERMISSIONS,
        "data_scope": "organization",
    },
    "leader": {
        "display_name": "Leader",
        "permissions": [
            "participants.view",
            "participants.edit",
            "participants.create",
            "participants.transfer",
            "attendance.view",
            "attendance.manage",
            "groups.view",
            "communications.send",
            "reports.view",
            "points.view",
            "points.manage",
            "badges.view",
            "permission_slips.sign",
        ],
        "data_scope": "organization",
    },
    "finance": {
        "display_name": "Finance",
        "permissions": ["reports.view"],
        "data_scope": "organization",
    },
    "equipment": {
        "display_name": "Equipment",
        "permissions": ["reports.view"],
        "data_scope": "organization",
    },
    "administration": {
        "display_name": "Administration",
        "permissions": ["reports.view", "communications.send", "participants.view"],
        "data_scope": "organization",
    },
    "parent": {
        "display_name": "Parent",
        "permissions": ["participants.view", "permission_slips.sign"],
        "data_scope": "linked",
    },
    "demoadmin": {
        "display_name": "Demo Admin",
        "permissions": ["reports.view", "users.view", "participants.view", "attendance.view",
                        "groups.view", "badges.view", "points.view"],
        "data_scope": "organization",
    },
    "demoparent": {
        "display_name": "Demo Parent",
        "permissions": ["participants.view"],
        "data_scope": "linked",
    },
}

# Highest priority first; used to pick the primary role carried in the token
ROLE_PRIORITY = [
    "district",
    "unitadmin",
    "leader",
    "finance",
    "equipment",
    "administration",
    "parent",
    "demoadmin",
    "demoparent",
    "admin",
    "animation",
]

# Role names used before role bundles existed
LEGACY_ROLE_ALIASES = {
    "admin": "district",
    "animation": "leader",
}

DEMO_ROLES = ("demoadmin", "demoparent")


def all_permission_keys():
    """Every permission key referenced by at least one bundle, sorted."""
    keys = set()
    for bundle in ROLE_BUNDLES.values():
        keys.update(bundle["permissions"])
    return sorted(keys)


def map_legacy_role(role_name):
    return LEGACY_ROLE_ALIASES.get(role_name, role_name)
