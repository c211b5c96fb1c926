import os
import unittest
from pathlib import Path
from tempfile import TemporaryDirectory

# Must be set before config is imported anywhere
os.environ.setdefault("FLASK_ENV", "testing")
os.environ.setdefault("SECRET_KEY", "test-secret-key")

import server
from database_setup import create_organization, create_schema, create_user, seed_roles


class ApiTestCase(unittest.TestCase):
    """Fresh SQLite database per test with one troop and a user per role."""

    def setUp(self):
        self._tmp = TemporaryDirectory()
        self._previous_db = server.app.config['DATABASE_PATH']
        server.app.config['DATABASE_PATH'] = str(Path(self._tmp.name) / "scouts.sqlite3")

        self.conn = server.get_db_connection()
        create_schema(self.conn)
        seed_roles(self.conn)

        self.org_id = create_organization(self.conn, "Troop QA", "troop.test")
        self.other_org_id = create_organization(self.conn, "Other Troop")

        self.admin_id = create_user(self.conn, "admin@troop.test", "admin-pass-1", "Admin QA",
                                    self.org_id, ['district'])
        self.leader_id = create_user(self.conn, "leader@troop.test", "leader-pass-1", "Akela",
                                     self.org_id, ['leader'])
        self.parent_id = create_user(self.conn, "parent@troop.test", "parent-pass-1", "Parent QA",
                                     self.org_id, ['parent'])
        self.demo_id = create_user(self.conn, "demo@troop.test", "demo-pass-1", "Demo QA",
                                   self.org_id, ['demoadmin'])

        self.client = server.app.test_client()

    def tearDown(self):
        self.conn.close()
        server.app.config['DATABASE_PATH'] = self._previous_db
        self._tmp.cleanup()

    # --- auth helpers ---

    def token_for(self, user_id, organization_id=None):
        user = self.conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return server._issue_session(self.conn, user, organization_id or self.org_id)['token']

    def headers_for(self, user_id, organization_id=None):
        organization_id = organization_id or self.org_id
        return {
            "Authorization": f"Bearer {self.token_for(user_id, organization_id)}",
            "X-Organization-ID": str(organization_id),
        }

    def get(self, path, user_id, **kwargs):
        return self.client.get(path, headers=self.headers_for(user_id), **kwargs)

    def post(self, path, user_id, payload=None):
        return self.client.post(path, headers=self.headers_for(user_id), json=payload)

    def put(self, path, user_id, payload=None):
        return self.client.put(path, headers=self.headers_for(user_id), json=payload)

    def delete(self, path, user_id):
        return self.client.delete(path, headers=self.headers_for(user_id))

    # --- data helpers ---

    def add_group(self, name="Loups gris", section="louveteaux", organization_id=None):
        cursor = self.conn.execute(
            "INSERT INTO scout_groups (organization_id, name, section) VALUES (?, ?, ?)",
            (organization_id or self.org_id, name, section)
        )
        self.conn.commit()
        return cursor.lastrowid

    def add_participant(self, first_name="Mowgli", last_name="Jungle", group_id=None,
                        organization_id=None, birth_date=None):
        organization_id = organization_id or self.org_id
        cursor = self.conn.execute(
            "INSERT INTO participants (first_name, last_name, date_naissance) VALUES (?, ?, ?)",
            (first_name, last_name, birth_date)
        )
        participant_id = cursor.lastrowid
        self.conn.execute("INSERT INTO participant_organizations (participant_id, organization_id) VALUES (?, ?)",
                          (participant_id, organization_id))
        if group_id:
            self.conn.execute(
                "INSERT INTO participant_groups (participant_id, group_id, organization_id) VALUES (?, ?, ?)",
                (participant_id, group_id, organization_id)
            )
        self.conn.commit()
        return participant_id

    def link_parent(self, user_id, participant_id):
        self.conn.execute("INSERT INTO user_participants (user_id, participant_id) VALUES (?, ?)",
                          (user_id, participant_id))
        self.conn.commit()

    def points_of(self, participant_id):
        return self.conn.execute(
            "SELECT COALESCE(SUM(value), 0) FROM points WHERE participant_id = ? AND organization_id = ?",
            (participant_id, self.org_id)
        ).fetchone()[0]
