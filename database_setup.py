import json
import sqlite3
import uuid
import bcrypt
import os
from dotenv import load_dotenv

from roles import ROLE_BUNDLES, all_permission_keys

# =================================================================
#   Scout Troop Manager - Database Setup Script
#   - Creates the complete multi-tenant schema (idempotent).
#   - Seeds role bundles and their permissions.
#   - Adds a default organization and district administrator.
# =================================================================

# Load environment variables
load_dotenv(os.path.join(os.path.dirname(os.path.abspath(__file__)), '.env'))


SCHEMA = [
    # --- Tenancy ---
    """
    CREATE TABLE IF NOT EXISTS organizations (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS organization_domains (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        organization_id INTEGER NOT NULL,
        domain TEXT UNIQUE NOT NULL,
        FOREIGN KEY (organization_id) REFERENCES organizations (id) ON DELETE CASCADE
    )
    """,
    # organization_id 0 holds settings shared by every tenant, so no foreign key here
    """
    CREATE TABLE IF NOT EXISTS organization_settings (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        organization_id INTEGER NOT NULL,
        setting_key TEXT NOT NULL,
        setting_value TEXT,
        updated_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        UNIQUE (organization_id, setting_key)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS organization_form_formats (
        organization_id INTEGER NOT NULL,
        form_type TEXT NOT NULL,
        form_structure TEXT,
        PRIMARY KEY (organization_id, form_type)
    )
    """,

    # --- Users, roles and permissions ---
    """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        email TEXT UNIQUE NOT NULL,
        password TEXT NOT NULL DEFAULT '',
        full_name TEXT,
        whatsapp_phone_number TEXT,
        is_verified INTEGER NOT NULL DEFAULT 0,
        reset_token TEXT,
        reset_token_expiry DATETIME,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS roles (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        role_name TEXT UNIQUE NOT NULL,
        display_name TEXT,
        data_scope TEXT NOT NULL DEFAULT 'organization',
        is_system_role INTEGER NOT NULL DEFAULT 1
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS permissions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        permission_key TEXT UNIQUE NOT NULL,
        category TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS role_permissions (
        role_id INTEGER NOT NULL,
        permission_id INTEGER NOT NULL,
        PRIMARY KEY (role_id, permission_id),
        FOREIGN KEY (role_id) REFERENCES roles (id) ON DELETE CASCADE,
        FOREIGN KEY (permission_id) REFERENCES permissions (id) ON DELETE CASCADE
    )
    """,
    # role_ids is a JSON array of roles.id
    """
    CREATE TABLE IF NOT EXISTS user_organizations (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        organization_id INTEGER NOT NULL,
        role_ids TEXT NOT NULL DEFAULT '[]',
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        UNIQUE (user_id, organization_id),
        FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE,
        FOREIGN KEY (organization_id) REFERENCES organizations (id) ON DELETE CASCADE
    )
    """,

    # --- Groups and participants ---
    """
    CREATE TABLE IF NOT EXISTS scout_groups (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        organization_id INTEGER NOT NULL,
        name TEXT NOT NULL,
        section TEXT,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (organization_id) REFERENCES organizations (id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS participants (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        first_name TEXT NOT NULL,
        last_name TEXT NOT NULL,
        date_naissance DATE,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS participant_organizations (
        participant_id INTEGER NOT NULL,
        organization_id INTEGER NOT NULL,
        PRIMARY KEY (participant_id, organization_id),
        FOREIGN KEY (participant_id) REFERENCES participants (id) ON DELETE CASCADE,
        FOREIGN KEY (organization_id) REFERENCES organizations (id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS participant_groups (
        participant_id INTEGER NOT NULL,
        group_id INTEGER NOT NULL,
        organization_id INTEGER NOT NULL,
        first_leader INTEGER NOT NULL DEFAULT 0,
        second_leader INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (participant_id, organization_id),
        FOREIGN KEY (participant_id) REFERENCES participants (id) ON DELETE CASCADE,
        FOREIGN KEY (group_id) REFERENCES scout_groups (id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_participants (
        user_id TEXT NOT NULL,
        participant_id INTEGER NOT NULL,
        PRIMARY KEY (user_id, participant_id),
        FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE,
        FOREIGN KEY (participant_id) REFERENCES participants (id) ON DELETE CASCADE
    )
    """,

    # --- Guardians ---
    """
    CREATE TABLE IF NOT EXISTS parents_guardians (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        nom TEXT NOT NULL,
        prenom TEXT NOT NULL,
        courriel TEXT,
        telephone_residence TEXT,
        telephone_travail TEXT,
        telephone_cellulaire TEXT,
        is_primary INTEGER NOT NULL DEFAULT 0,
        is_emergency_contact INTEGER NOT NULL DEFAULT 0,
        user_uuid TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS participant_guardians (
        participant_id INTEGER NOT NULL,
        guardian_id INTEGER NOT NULL,
        lien TEXT,
        PRIMARY KEY (participant_id, guardian_id),
        FOREIGN KEY (participant_id) REFERENCES participants (id) ON DELETE CASCADE,
        FOREIGN KEY (guardian_id) REFERENCES parents_guardians (id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS guardian_users (
        guardian_id INTEGER NOT NULL,
        user_id TEXT NOT NULL,
        PRIMARY KEY (guardian_id, user_id),
        FOREIGN KEY (guardian_id) REFERENCES parents_guardians (id) ON DELETE CASCADE,
        FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS form_submissions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        organization_id INTEGER NOT NULL,
        participant_id INTEGER NOT NULL,
        form_type TEXT NOT NULL,
        submission_data TEXT NOT NULL DEFAULT '{}',
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        updated_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        UNIQUE (organization_id, participant_id, form_type),
        FOREIGN KEY (participant_id) REFERENCES participants (id) ON DELETE CASCADE
    )
    """,

    # --- Attendance, points and honors ---
    """
    CREATE TABLE IF NOT EXISTS attendance (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        participant_id INTEGER NOT NULL,
        organization_id INTEGER NOT NULL,
        date DATE NOT NULL,
        status TEXT NOT NULL,
        previous_status TEXT,
        updated_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        UNIQUE (participant_id, organization_id, date),
        FOREIGN KEY (participant_id) REFERENCES participants (id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS points (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        participant_id INTEGER,
        group_id INTEGER,
        organization_id INTEGER NOT NULL,
        value INTEGER NOT NULL,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (participant_id) REFERENCES participants (id) ON DELETE CASCADE,
        FOREIGN KEY (group_id) REFERENCES scout_groups (id) ON DELETE SET NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS honors (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        participant_id INTEGER NOT NULL,
        organization_id INTEGER NOT NULL,
        date DATE NOT NULL,
        reason TEXT,
        UNIQUE (participant_id, organization_id, date),
        FOREIGN KEY (participant_id) REFERENCES participants (id) ON DELETE CASCADE
    )
    """,

    # --- Badges ---
    # organization_id 0 marks a template shared by every tenant
    """
    CREATE TABLE IF NOT EXISTS badge_templates (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        organization_id INTEGER NOT NULL DEFAULT 0,
        template_key TEXT NOT NULL,
        name TEXT NOT NULL,
        section TEXT NOT NULL DEFAULT 'general',
        level_count INTEGER,
        levels TEXT,
        image TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS badge_progress (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        participant_id INTEGER NOT NULL,
        organization_id INTEGER NOT NULL,
        badge_template_id INTEGER NOT NULL,
        level INTEGER NOT NULL,
        star_type TEXT NOT NULL DEFAULT 'proie',
        objectif TEXT,
        description TEXT,
        fierte INTEGER NOT NULL DEFAULT 0,
        raison TEXT,
        date_obtention DATE,
        status TEXT NOT NULL DEFAULT 'pending',
        approval_date DATETIME,
        delivered_at DATETIME,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (participant_id) REFERENCES participants (id) ON DELETE CASCADE,
        FOREIGN KEY (badge_template_id) REFERENCES badge_templates (id) ON DELETE CASCADE
    )
    """,

    # --- Meetings ---
    """
    CREATE TABLE IF NOT EXISTS reunion_preparations (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        organization_id INTEGER NOT NULL,
        date DATE NOT NULL,
        animateur_responsable TEXT,
        youth_of_honor TEXT NOT NULL DEFAULT '[]',
        endroit TEXT,
        activities TEXT NOT NULL DEFAULT '[]',
        notes TEXT,
        duration_override INTEGER,
        updated_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        UNIQUE (organization_id, date)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS rappel_reunion (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        organization_id INTEGER UNIQUE NOT NULL,
        reminder_text TEXT NOT NULL,
        reminder_date DATE,
        recurring_reminder INTEGER NOT NULL DEFAULT 0,
        creation_time DATETIME DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS guests (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        organization_id INTEGER NOT NULL,
        name TEXT NOT NULL,
        email_parent TEXT,
        attendance_date DATE NOT NULL
    )
    """,

    # --- Notifications and announcements ---
    """
    CREATE TABLE IF NOT EXISTS subscribers (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT,
        organization_id INTEGER NOT NULL,
        endpoint TEXT UNIQUE NOT NULL,
        p256dh TEXT NOT NULL,
        auth TEXT NOT NULL,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP
    )
    """,
    # recipient_roles / recipient_groups are JSON arrays
    """
    CREATE TABLE IF NOT EXISTS announcements (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        organization_id INTEGER NOT NULL,
        created_by TEXT NOT NULL,
        subject TEXT NOT NULL,
        message TEXT NOT NULL,
        recipient_roles TEXT NOT NULL DEFAULT '[]',
        recipient_groups TEXT NOT NULL DEFAULT '[]',
        scheduled_at DATETIME,
        sent_at DATETIME,
        status TEXT NOT NULL DEFAULT 'draft',
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS announcement_logs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        announcement_id INTEGER NOT NULL,
        channel TEXT NOT NULL,
        recipient_email TEXT,
        recipient_user_id TEXT,
        status TEXT NOT NULL,
        error_message TEXT,
        metadata TEXT,
        sent_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (announcement_id) REFERENCES announcements (id) ON DELETE CASCADE
    )
    """,

    # --- Two-factor authentication ---
    """
    CREATE TABLE IF NOT EXISTS two_factor_codes (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        organization_id INTEGER NOT NULL,
        code_hash TEXT NOT NULL,
        expires_at DATETIME NOT NULL,
        attempts INTEGER NOT NULL DEFAULT 0,
        verified INTEGER NOT NULL DEFAULT 0,
        ip_address TEXT,
        user_agent TEXT,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS trusted_devices (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        organization_id INTEGER NOT NULL,
        device_token_hash TEXT UNIQUE NOT NULL,
        device_name TEXT,
        expires_at DATETIME NOT NULL,
        last_used_at DATETIME,
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE
    )
    """,

    # --- Offline outbox replay ---
    """
    CREATE TABLE IF NOT EXISTS offline_sync_actions (
        client_action_id TEXT NOT NULL,
        organization_id INTEGER NOT NULL,
        user_id TEXT,
        action_type TEXT NOT NULL,
        applied_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        PRIMARY KEY (client_action_id, organization_id)
    )
    """,
]

INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_attendance_org_date ON attendance (organization_id, date)",
    "CREATE INDEX IF NOT EXISTS idx_points_org_participant ON points (organization_id, participant_id)",
    "CREATE INDEX IF NOT EXISTS idx_badge_progress_org_status ON badge_progress (organization_id, status)",
    "CREATE INDEX IF NOT EXISTS idx_announcements_status_schedule ON announcements (status, scheduled_at)",
    "CREATE INDEX IF NOT EXISTS idx_announcement_logs_announcement ON announcement_logs (announcement_id)",
]


def hash_password(password):
    """Hash a password using bcrypt."""
    return bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt()).decode('utf-8')


def create_schema(conn):
    """Create every table and index if missing. Safe to call on each startup."""
    for statement in SCHEMA:
        conn.execute(statement)
    for statement in INDEXES:
        conn.execute(statement)
    conn.commit()


def seed_roles(conn):
    """Insert role bundles, permission keys and their mapping (idempotent)."""
    for key in all_permission_keys():
        conn.execute(
            "INSERT OR IGNORE INTO permissions (permission_key, category) VALUES (?, ?)",
            (key, key.split('.')[0])
        )

    for role_name, bundle in ROLE_BUNDLES.items():
        conn.execute(
            """INSERT INTO roles (role_name, display_name, data_scope) VALUES (?, ?, ?)
               ON CONFLICT (role_name) DO UPDATE SET
                 display_name = excluded.display_name, data_scope = excluded.data_scope""",
            (role_name, bundle['display_name'], bundle['data_scope'])
        )
        role_id = conn.execute("SELECT id FROM roles WHERE role_name = ?", (role_name,)).fetchone()[0]
        for key in bundle['permissions']:
            conn.execute(
                """INSERT OR IGNORE INTO role_permissions (role_id, permission_id)
                   SELECT ?, id FROM permissions WHERE permission_key = ?""",
                (role_id, key)
            )
    conn.commit()


def create_organization(conn, name, domain=None):
    cursor = conn.execute("INSERT INTO organizations (name) VALUES (?)", (name,))
    org_id = cursor.lastrowid
    if domain:
        conn.execute("INSERT INTO organization_domains (organization_id, domain) VALUES (?, ?)",
                     (org_id, domain.lower()))
    conn.commit()
    return org_id


def create_user(conn, email, password, full_name, organization_id, role_names, is_verified=True):
    """Create a user, link it to an organization with the given role names and return its id."""
    user_id = str(uuid.uuid4())
    conn.execute(
        "INSERT INTO users (id, email, password, full_name, is_verified) VALUES (?, ?, ?, ?, ?)",
        (user_id, email.lower(), hash_password(password) if password else '', full_name, 1 if is_verified else 0)
    )
    role_ids = [row[0] for row in conn.execute(
        f"SELECT id FROM roles WHERE role_name IN ({','.join('?' * len(role_names))})",
        tuple(role_names)
    ).fetchall()] if role_names else []
    conn.execute(
        "INSERT INTO user_organizations (user_id, organization_id, role_ids) VALUES (?, ?, ?)",
        (user_id, organization_id, json.dumps(role_ids))
    )
    conn.commit()
    return user_id


def seed_default_organization(connection):
    """
    Adds the default organization and its district administrator when no
    organization exists yet. Returns (org_id, admin_email, admin_password),
    or None when the database already had organizations.
    """
    existing = connection.execute("SELECT COUNT(*) FROM organizations").fetchone()[0]
    if existing:
        return None
    org_name = os.environ.get('DEFAULT_ORGANIZATION_NAME', 'Scout Troop')
    admin_email = os.environ.get('ADMIN_DEFAULT_EMAIL', 'admin@example.org')
    admin_password = os.environ.get('ADMIN_DEFAULT_PASSWORD', 'admin')
    org_id = create_organization(connection, org_name, os.environ.get('DEFAULT_ORGANIZATION_DOMAIN'))
    create_user(connection, admin_email, admin_password, 'Administrator', org_id, ['district'])
    return org_id, admin_email, admin_password


def setup_database(db_path=None):
    """
    Creates the schema, seeds roles and adds a default organization with a
    district administrator when the database is empty.
    """
    db_path = db_path or os.environ.get('DATABASE_PATH', 'scouts.db')
    connection = None

    try:
        connection = sqlite3.connect(db_path)
        connection.execute("PRAGMA foreign_keys = ON")

        print("--- Creating tables with final schema...")
        create_schema(connection)
        print("All tables created.")

        print("\n--- Seeding role bundles and permissions...")
        seed_roles(connection)
        print("Roles seeded.")

        seeded = seed_default_organization(connection)
        if seeded:
            org_id, admin_email, admin_password = seeded
            print("\n--- Added default organization and administrator")
            print(f"  Organization id: {org_id}")
            print(f"  Email: {admin_email}")
            print(f"  Password: {admin_password}")
            print("  ⚠️  CHANGE THIS PASSWORD IMMEDIATELY after first login!")
        else:
            print("Organizations already exist, skipping defaults.")

    except sqlite3.Error as e:
        print(f"An error occurred: {e}")
    finally:
        if connection:
            connection.close()
            print("Database connection closed.")


# This block allows the script to be run directly from the command line
if __name__ == '__main__':
    print("Starting database setup...")
    setup_database()
    print("\nDatabase setup complete.")
