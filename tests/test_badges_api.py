import json
import unittest

from support import ApiTestCase

from badges import (BadgeLevelError, determine_next_level, get_level_count, normalize_levels,
                    normalize_star_type, section_matches)


class BadgeLevelTests(unittest.TestCase):
    def test_levels_fall_back_to_defaults(self):
        self.assertEqual(len(normalize_levels(None)), 3)
        self.assertEqual(len(normalize_levels("not json", 2)), 2)
        self.assertEqual(get_level_count(json.dumps([{"level": 1}, {"level": 2}])), 2)
        self.assertEqual(get_level_count(None, 5), 5)

    def test_next_level(self):
        self.assertEqual(determine_next_level([], 3), 1)
        self.assertEqual(determine_next_level([1, 3], 3), 2)
        self.assertIsNone(determine_next_level([1, 2, 3], 3))
        self.assertEqual(determine_next_level([1], 3, requested_level=3), 3)

    def test_requested_level_errors(self):
        with self.assertRaisesRegex(BadgeLevelError, "Invalid level"):
            determine_next_level([], 3, requested_level=4)
        with self.assertRaisesRegex(BadgeLevelError, "already recorded"):
            determine_next_level([2], 3, requested_level=2)

    def test_star_type_and_sections(self):
        self.assertEqual(normalize_star_type("battue"), "battue")
        self.assertEqual(normalize_star_type("gold"), "proie")
        self.assertTrue(section_matches("general", "eclaireurs"))
        self.assertTrue(section_matches("louveteaux", "louveteaux"))
        self.assertFalse(section_matches("castors", "louveteaux"))
        self.assertFalse(section_matches("castors", None))
        self.assertTrue(section_matches("general", None))


class BadgeApiTests(ApiTestCase):
    def setUp(self):
        super().setUp()
        self.group_id = self.add_group(section="louveteaux")
        self.participant_id = self.add_participant(group_id=self.group_id)
        self.template_id = self._template("vitesse", "louveteaux", levels=[{"level": 1}, {"level": 2}])
        self.shared_template_id = self._template("general", "general", organization_id=0)

    def _template(self, key, section, levels=None, organization_id=None):
        cursor = self.conn.execute(
            "INSERT INTO badge_templates (organization_id, template_key, name, section, levels) VALUES (?, ?, ?, ?, ?)",
            (self.org_id if organization_id is None else organization_id, key, key.title(), section,
             json.dumps(levels) if levels else None)
        )
        self.conn.commit()
        return cursor.lastrowid

    def _submit(self, template_id=None, **extra):
        payload = {"participant_id": self.participant_id, "badge_template_id": template_id or self.template_id}
        payload.update(extra)
        return self.post("/api/save-badge-progress", self.leader_id, payload)

    def test_templates_include_shared(self):
        self._template("foreign", "general", organization_id=self.other_org_id)
        templates = self.get("/api/badge-templates", self.parent_id).get_json()
        self.assertEqual({t["id"] for t in templates}, {self.template_id, self.shared_template_id})
        shared = next(t for t in templates if t["id"] == self.shared_template_id)
        self.assertEqual(shared["level_count"], 3)

    def test_levels_fill_up(self):
        first = self._submit(star_type="battue", objectif="Run fast")
        self.assertEqual(first.status_code, 201)
        self.assertEqual(first.get_json()["level"], 1)
        self.assertEqual(self._submit().get_json()["level"], 2)

        full = self._submit()
        self.assertEqual(full.status_code, 400)
        self.assertEqual(full.get_json()["error"], "All levels for this badge have already been recorded")

        row = self.conn.execute("SELECT star_type, status FROM badge_progress WHERE level = 1").fetchone()
        self.assertEqual((row["star_type"], row["status"]), ("battue", "pending"))

    def test_rejected_level_can_be_recorded_again(self):
        badge_id = self._submit().get_json()["id"]
        self.put("/api/reject-badge", self.admin_id, {"badge_id": badge_id})
        self.assertEqual(self._submit(level=1).get_json()["level"], 1)

    def test_requested_level_validation(self):
        self._submit(level=2)
        self.assertEqual(self._submit(level=2).get_json()["error"], "Level already recorded for this badge")
        self.assertEqual(self._submit(level=9).get_json()["error"], "Invalid level for this badge template")

    def test_section_mismatch(self):
        castors = self._template("castor", "castors")
        resp = self._submit(castors)
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(self._submit(self.shared_template_id).status_code, 201)

    def test_ungrouped_participant_counts_as_general(self):
        loner = self.add_participant("Solo", "Scout")
        castors = self._template("castor", "castors")
        payload = {"participant_id": loner, "badge_template_id": castors}
        resp = self.post("/api/save-badge-progress", self.admin_id, payload)
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.get_json()["error"], "Badge template does not match the participant's section")
        payload["badge_template_id"] = self.shared_template_id
        self.assertEqual(self.post("/api/save-badge-progress", self.admin_id, payload).status_code, 201)

    def test_parent_submits_for_own_child_only(self):
        self.assertEqual(self.post("/api/save-badge-progress", self.parent_id,
                                   {"participant_id": self.participant_id,
                                    "badge_template_id": self.template_id}).status_code, 404)
        self.link_parent(self.parent_id, self.participant_id)
        self.assertEqual(self.post("/api/save-badge-progress", self.parent_id,
                                   {"participant_id": self.participant_id,
                                    "badge_template_id": self.template_id}).status_code, 201)

    def test_approval_awards_points_and_delivery(self):
        badge_id = self._submit().get_json()["id"]
        self.assertEqual(len(self.get("/api/pending-badges", self.admin_id).get_json()), 1)

        self.assertEqual(self.put("/api/approve-badge", self.leader_id, {"badge_id": badge_id}).status_code, 403)
        resp = self.put("/api/approve-badge", self.admin_id, {"badge_id": badge_id})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.get_json()["points"], 5)
        self.assertEqual(self.points_of(self.participant_id), 5)
        group_row = self.conn.execute("SELECT group_id FROM points WHERE participant_id = ?",
                                      (self.participant_id,)).fetchone()
        self.assertEqual(group_row["group_id"], self.group_id)

        self.assertEqual(self.put("/api/approve-badge", self.admin_id, {"badge_id": badge_id}).status_code, 409)

        awaiting = self.get("/api/badges-awaiting-delivery", self.admin_id).get_json()
        self.assertEqual([b["id"] for b in awaiting], [badge_id])
        self.assertEqual(self.post("/api/mark-badge-delivered", self.admin_id, {"badge_id": badge_id}).status_code, 200)
        self.assertEqual(self.get("/api/badges-awaiting-delivery", self.admin_id).get_json(), [])
        self.assertEqual(self.post("/api/mark-badge-delivered", self.admin_id, {"badge_id": badge_id}).status_code, 404)

        summary = self.get("/api/badge-summary", self.admin_id).get_json()
        self.assertEqual(summary[0]["approved_levels"], 1)
        self.assertEqual(summary[0]["highest_level"], 1)

    def test_bulk_delivery(self):
        ids = [self._submit().get_json()["id"] for _ in range(2)]
        for badge_id in ids:
            self.put("/api/approve-badge", self.admin_id, {"badge_id": badge_id})
        resp = self.post("/api/mark-badges-delivered-bulk", self.admin_id, {"badge_ids": ids})
        self.assertEqual(resp.get_json()["count"], 2)

    def test_progress_listing(self):
        self._submit()
        rows = self.get(f"/api/badge-progress?participant_id={self.participant_id}", self.leader_id).get_json()
        self.assertEqual(rows[0]["badge_name"], "Vitesse")
        self.assertEqual(self.get("/api/badge-progress", self.leader_id).status_code, 400)


if __name__ == "__main__":
    unittest.main()
