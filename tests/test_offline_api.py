import datetime
import unittest

from support import ApiTestCase

from sync_engine import OfflineRangeError, OfflineSyncEngine


class OfflineRangeTests(ApiTestCase):
    def setUp(self):
        super().setUp()
        self.engine = OfflineSyncEngine(self.conn, self.org_id, max_days=14)

    def test_range_limits(self):
        start, end = self.engine.validate_range("2025-07-01", "2025-07-15")
        self.assertEqual((end - start).days, 14)
        with self.assertRaisesRegex(OfflineRangeError, "cannot exceed 14 days"):
            self.engine.validate_range("2025-07-01", "2025-07-16")
        with self.assertRaisesRegex(OfflineRangeError, "on or after start date"):
            self.engine.validate_range("2025-07-05", "2025-07-01")
        with self.assertRaisesRegex(OfflineRangeError, "start_date is required"):
            self.engine.validate_range(None, "2025-07-01")

    def test_upcoming_activities_from_consecutive_preparations(self):
        today = datetime.date(2025, 7, 1)
        for offset, place in ((2, "Camp Bauset"), (3, None), (4, None), (10, "Local"), (20, None), (21, None)):
            self.conn.execute("INSERT INTO reunion_preparations (organization_id, date, endroit) VALUES (?, ?, ?)",
                              (self.org_id, (today + datetime.timedelta(days=offset)).isoformat(), place))
        self.conn.commit()

        activities = self.engine.upcoming_multi_day_activities(today)
        self.assertEqual([(a["start_date"], a["days"]) for a in activities],
                         [("2025-07-03", 3), ("2025-07-21", 2)])
        self.assertEqual(activities[0]["location"], "Camp Bauset")
        self.assertIsNone(activities[1]["location"])
        self.assertTrue(activities[0]["can_prepare"])


class OfflineApiTests(ApiTestCase):
    def setUp(self):
        super().setUp()
        self.group_id = self.add_group()
        self.participant_id = self.add_participant(group_id=self.group_id)

    def test_prepare_bundle(self):
        self.post("/api/attendance", self.leader_id,
                  {"participant_id": self.participant_id, "status": "present", "date": "2025-07-02"})
        resp = self.post("/api/offline/prepare-activity", self.leader_id,
                         {"start_date": "2025-07-01", "end_date": "2025-07-03"})
        self.assertEqual(resp.status_code, 200)
        bundle = resp.get_json()["data"]
        self.assertEqual(bundle["dates"], ["2025-07-01", "2025-07-02", "2025-07-03"])
        self.assertEqual(bundle["participants"][0]["group_name"], "Loups gris")
        self.assertEqual(len(bundle["attendance"]["byDate"]["2025-07-02"]), 1)
        self.assertEqual(bundle["attendance"]["byDate"]["2025-07-01"], [])
        self.assertIn("templates", bundle["badges"])
        self.assertGreater(bundle["expiresAt"], bundle["preparedAt"])

    def test_prepare_rejects_long_ranges(self):
        resp = self.post("/api/offline/prepare-activity", self.leader_id,
                         {"start_date": "2025-07-01", "end_date": "2025-08-01"})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.get_json()["error"], "Date range cannot exceed 14 days")
        self.assertEqual(self.post("/api/offline/prepare-activity", self.parent_id,
                                   {"start_date": "2025-07-01", "end_date": "2025-07-02"}).status_code, 403)

    def test_status(self):
        body = self.get("/api/offline/status", self.leader_id).get_json()
        self.assertEqual(body["maxDays"], 14)
        self.assertEqual(body["stats"]["participantCount"], 1)
        self.assertEqual(body["stats"]["groupCount"], 1)
        self.assertEqual(body["stats"]["estimatedKBPerDay"], 2)
        self.assertEqual(body["upcomingActivities"], [])

    def test_replay_is_idempotent(self):
        actions = [
            {"id": "device-1", "type": "updateAttendance",
             "data": {"participant_ids": [self.participant_id], "status": "present", "date": "2025-07-02"}},
            {"id": "device-2", "type": "saveHonor", "data": {}},
            {"type": "updateAttendance", "data": {}},
        ]
        first = self.post("/api/offline/sync-attendance", self.leader_id, {"actions": actions}).get_json()
        self.assertEqual(first["applied"], ["device-1"])
        self.assertEqual([f["id"] for f in first["failed"]], ["device-2", None])
        self.assertEqual(first["pointUpdates"][0]["points"], 1)

        second = self.post("/api/offline/sync-attendance", self.leader_id, {"actions": actions[:1]}).get_json()
        self.assertEqual(second["applied"], [])
        self.assertEqual(second["skipped"], ["device-1"])
        self.assertEqual(self.points_of(self.participant_id), 1)

    def test_replay_rejects_foreign_participants(self):
        outsider = self.add_participant("Out", "Sider", organization_id=self.other_org_id)
        body = self.post("/api/offline/sync-attendance", self.leader_id, {"actions": [
            {"id": "device-9", "type": "updateAttendance",
             "data": {"participant_ids": [outsider], "status": "present", "date": "2025-07-02"}},
        ]}).get_json()
        self.assertEqual(body["failed"][0]["id"], "device-9")
        self.assertEqual(self.conn.execute("SELECT COUNT(*) FROM attendance").fetchone()[0], 0)

    def test_replay_rejects_malformed_actions(self):
        resp = self.post("/api/offline/sync-attendance", self.leader_id, {"actions": [
            "device-1",
            {"id": "device-2", "type": "updateAttendance",
             "data": {"participant_ids": [self.participant_id], "status": "present", "date": "next tuesday"}},
            {"id": "device-3", "type": "updateAttendance",
             "data": {"participant_ids": self.participant_id, "status": "present", "date": "2025-07-02"}},
            {"id": "device-4", "type": "updateAttendance",
             "data": {"participant_ids": [{"id": 1}], "status": "present", "date": "2025-07-02"}},
            {"id": "device-5", "type": "updateAttendance", "data": ["present"]},
        ]})
        self.assertEqual(resp.status_code, 200)
        failed = resp.get_json()["failed"]
        self.assertEqual(failed[0], {"id": None, "error": "Invalid action"})
        self.assertEqual([f["id"] for f in failed[1:]], ["device-2", "device-3", "device-4", "device-5"])
        self.assertTrue(all(f["error"] == "Invalid attendance payload" for f in failed[1:]))
        self.assertEqual(self.conn.execute("SELECT COUNT(*) FROM attendance").fetchone()[0], 0)

    def test_prepare_accepts_full_window(self):
        resp = self.post("/api/offline/prepare-activity", self.leader_id,
                         {"start_date": "2025-07-01", "end_date": "2025-07-15"})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(len(resp.get_json()["data"]["dates"]), 15)

    def test_sync_requires_action_list(self):
        self.assertEqual(self.post("/api/offline/sync-attendance", self.leader_id,
                                   {"actions": "nope"}).status_code, 400)


if __name__ == "__main__":
    unittest.main()
