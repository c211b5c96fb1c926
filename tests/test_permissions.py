import json
import unittest

from support import ApiTestCase

import permissions
from roles import map_legacy_role


class MembershipResolutionTests(ApiTestCase):
    def test_member_gets_roles_and_permissions(self):
        result = permissions.verify_organization_membership(self.conn, self.leader_id, self.org_id)
        self.assertTrue(result["authorized"])
        self.assertEqual(result["role"], "leader")
        self.assertIn("attendance.manage", result["permissions"])

    def test_non_member_rejected(self):
        result = permissions.verify_organization_membership(self.conn, self.leader_id, self.other_org_id)
        self.assertFalse(result["authorized"])
        self.assertEqual(result["message"], "User not a member of this organization")

    def test_missing_permissions_listed(self):
        result = permissions.verify_organization_membership(
            self.conn, self.parent_id, self.org_id, required_permissions=["participants.view", "attendance.manage"]
        )
        self.assertFalse(result["authorized"])
        self.assertEqual(result["message"], "Insufficient permissions")
        self.assertEqual(result["missing"], ["attendance.manage"])

    def test_required_role_accepts_legacy_name(self):
        result = permissions.verify_organization_membership(self.conn, self.admin_id, self.org_id,
                                                            required_roles=["admin"])
        self.assertTrue(result["authorized"])

        result = permissions.verify_organization_membership(self.conn, self.parent_id, self.org_id,
                                                            required_roles=["animation"])
        self.assertEqual(result["message"], "Insufficient role")

    def test_corrupt_role_ids_fail_closed(self):
        self.conn.execute("UPDATE user_organizations SET role_ids = 'not json' WHERE user_id = ?", (self.leader_id,))
        self.conn.commit()
        result = permissions.verify_organization_membership(self.conn, self.leader_id, self.org_id)
        self.assertFalse(result["authorized"])
        self.assertEqual(result["message"], "Authorization check failed")

    def test_data_scope_and_primary_role(self):
        self.assertEqual(permissions.get_user_data_scope(self.conn, ["parent"]), "linked")
        self.assertEqual(permissions.get_user_data_scope(self.conn, ["parent", "leader"]), "organization")
        self.assertEqual(permissions.get_user_data_scope(self.conn, []), "linked")
        self.assertEqual(permissions.get_primary_role(["parent", "unitadmin"]), "unitadmin")
        self.assertEqual(permissions.get_primary_role(["animation"]), "leader")
        self.assertTrue(permissions.is_demo_user(["demoparent"]))
        self.assertEqual(map_legacy_role("admin"), "district")

    def test_legacy_names_map_to_role_ids(self):
        self.assertEqual(permissions.get_role_ids(self.conn, ["animation"]),
                         permissions.get_role_ids(self.conn, ["leader"]))

    def test_participant_access_by_scope(self):
        participant_id = self.add_participant()
        stranger = self.add_participant("Shere", "Khan", organization_id=self.other_org_id)

        self.assertTrue(permissions.user_has_access_to_participant(
            self.conn, self.leader_id, participant_id, self.org_id, "organization"))
        self.assertFalse(permissions.user_has_access_to_participant(
            self.conn, self.leader_id, stranger, self.org_id, "organization"))
        self.assertFalse(permissions.user_has_access_to_participant(
            self.conn, self.parent_id, participant_id, self.org_id, "linked"))

        self.link_parent(self.parent_id, participant_id)
        self.assertTrue(permissions.user_has_access_to_participant(
            self.conn, self.parent_id, participant_id, self.org_id, "linked"))


class OrganizationResolutionTests(ApiTestCase):
    def test_token_organization_wins_over_overrides(self):
        org = permissions.resolve_organization_id(
            self.conn, self.org_id, {"X-Organization-ID": str(self.other_org_id)},
            {"organization_id": str(self.other_org_id)}, {"organization_id": self.other_org_id}, "localhost"
        )
        self.assertEqual(org, self.org_id)

    def test_fallback_order(self):
        org = permissions.resolve_organization_id(self.conn, None, {}, {"organization_id": "7"},
                                                  {"organization_id": 9}, "localhost")
        self.assertEqual(org, 7)
        org = permissions.resolve_organization_id(self.conn, None, {}, {}, {}, "troop.test:5000")
        self.assertEqual(org, self.org_id)
        with self.assertRaises(permissions.OrganizationNotFoundError):
            permissions.resolve_organization_id(self.conn, None, {}, {}, None, "nowhere.test")

    def test_foreign_header_cannot_switch_tenant(self):
        self.add_group("Foreign", organization_id=self.other_org_id)
        headers = self.headers_for(self.leader_id)
        headers["X-Organization-ID"] = str(self.other_org_id)
        resp = self.client.get("/api/groups", headers=headers)
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.get_json(), [])


class RouteGuardTests(ApiTestCase):
    def test_insufficient_permissions_body(self):
        resp = self.get("/api/users", self.parent_id)
        self.assertEqual(resp.status_code, 403)
        body = resp.get_json()
        self.assertEqual(body["error"], "Insufficient permissions")
        self.assertEqual(body["required"], ["users.view"])
        self.assertEqual(body["missing"], ["users.view"])

    def test_demo_user_can_read_but_not_write(self):
        self.assertEqual(self.get("/api/groups", self.demo_id).status_code, 200)

        self.conn.execute("UPDATE user_organizations SET role_ids = ? WHERE user_id = ?",
                          (json.dumps(permissions.get_role_ids(self.conn, ["demoadmin", "leader"])), self.demo_id))
        self.conn.commit()
        resp = self.post("/api/attendance", self.demo_id,
                         {"participant_id": self.add_participant(), "status": "present", "date": "2025-01-10"})
        self.assertEqual(resp.status_code, 403)
        self.assertTrue(resp.get_json()["isDemo"])

    def test_role_management(self):
        resp = self.put(f"/api/users/{self.parent_id}/roles", self.admin_id, {"roles": ["leader", "parent"]})
        self.assertEqual(resp.status_code, 200)
        roles = permissions.verify_organization_membership(self.conn, self.parent_id, self.org_id)["roles"]
        self.assertEqual(sorted(roles), ["leader", "parent"])

        resp = self.put(f"/api/users/{self.parent_id}/roles", self.admin_id, {"roles": ["wizard"]})
        self.assertEqual(resp.status_code, 400)

        resp = self.put(f"/api/users/{self.parent_id}/roles", self.leader_id, {"roles": ["leader"]})
        self.assertEqual(resp.status_code, 403)

    def test_users_listing_and_verification(self):
        self.conn.execute("UPDATE users SET is_verified = 0 WHERE id = ?", (self.parent_id,))
        self.conn.commit()

        resp = self.post(f"/api/users/{self.parent_id}/verify", self.admin_id)
        self.assertEqual(resp.status_code, 200)

        users = {u["id"]: u for u in self.get("/api/users", self.admin_id).get_json()}
        self.assertTrue(users[self.parent_id]["is_verified"])
        self.assertEqual(users[self.leader_id]["roles"], ["leader"])

    def test_organization_settings(self):
        resp = self.put("/api/organization-settings/point_system_rules", self.admin_id,
                        {"value": {"attendance": {"present": 3}}})
        self.assertEqual(resp.status_code, 200)
        settings = self.get("/api/organization-settings", self.leader_id).get_json()["settings"]
        self.assertEqual(settings["point_system_rules"]["attendance"]["present"], 3)

        self.assertEqual(self.put("/api/organization-settings/x", self.leader_id, {"value": 1}).status_code, 403)

    def test_link_participants(self):
        mine = self.add_participant()
        foreign = self.add_participant("Bagheera", "Panther", organization_id=self.other_org_id)
        resp = self.post("/api/link-participants", self.admin_id,
                         {"user_id": self.parent_id, "participant_ids": [mine, foreign]})
        self.assertEqual(resp.get_json()["linked"], 1)


if __name__ == "__main__":
    unittest.main()
