import datetime
import json
import sqlite3
import unittest
from unittest import mock

import requests

from support import ApiTestCase

import announcements
import server


class PayloadTests(unittest.TestCase):
    def test_normalize_filters_roles_and_groups(self):
        payload = announcements.normalize_announcement_payload({
            "subject": "  <b>Camp</b> d'hiver ", "message": " Bring boots ",
            "recipient_roles": ["parent", "wizard"], "recipient_groups": ["3", "x", 4],
        })
        self.assertEqual(payload["subject"], "Camp d'hiver")
        self.assertEqual(payload["message"], "Bring boots")
        self.assertEqual(payload["recipient_roles"], ["parent"])
        self.assertEqual(payload["recipient_groups"], [3, 4])
        self.assertTrue(payload["send_now"])

    def test_normalize_strips_markup_but_keeps_plain_text(self):
        payload = announcements.normalize_announcement_payload({
            "subject": "Ages 5 < 7 & 9 > 8 welcome", "message": "<p>Bring <b>boots</b></p>",
            "recipient_roles": ["parent"], "recipient_group_ids": ["5", None, 6],
        })
        self.assertEqual(payload["subject"], "Ages 5 < 7 & 9 > 8 welcome")
        self.assertEqual(payload["message"], "Bring boots")
        self.assertEqual(payload["recipient_groups"], [5, 6])

    def test_initial_status(self):
        now = datetime.datetime(2025, 6, 1, 12, 0, tzinfo=datetime.timezone.utc)
        future = {"subject": "s", "message": "m", "scheduled_at": "2025-06-02T08:00:00"}
        past = {"subject": "s", "message": "m", "scheduled_at": "2025-05-01T08:00:00Z"}

        self.assertEqual(announcements.determine_initial_status(
            announcements.normalize_announcement_payload(future), now), "scheduled")
        self.assertEqual(announcements.determine_initial_status(
            announcements.normalize_announcement_payload(past), now), "sending")
        self.assertEqual(announcements.determine_initial_status(
            announcements.normalize_announcement_payload({**future, "save_as_draft": True}), now), "draft")

    def test_parse_timestamp_treats_naive_as_utc(self):
        parsed = announcements.parse_timestamp("2025-06-02T08:00:00")
        self.assertEqual(parsed.tzinfo, datetime.timezone.utc)
        self.assertIsNone(announcements.parse_timestamp("tomorrow"))


class RecipientTests(ApiTestCase):
    def setUp(self):
        super().setUp()
        self.group_id = self.add_group()
        self.in_group = self.add_participant(group_id=self.group_id)
        self.outside = self.add_participant("Akru", "Wolf")
        self._guardian(self.in_group, "Messua@Village.test")
        self._guardian(self.outside, "other@village.test")
        self.conn.execute(
            "INSERT INTO form_submissions (organization_id, participant_id, form_type, submission_data) VALUES (?, ?, ?, ?)",
            (self.org_id, self.in_group, "fiche_sante", json.dumps({"courriel": "PARENT@troop.test"}))
        )
        self.conn.commit()

    def _guardian(self, participant_id, email):
        cursor = self.conn.execute("INSERT INTO parents_guardians (nom, prenom, courriel) VALUES ('G', 'G', ?)",
                                   (email,))
        self.conn.execute("INSERT INTO participant_guardians (participant_id, guardian_id) VALUES (?, ?)",
                          (participant_id, cursor.lastrowid))

    def _announcement(self, roles, groups=()):
        return {"id": 0, "organization_id": self.org_id, "recipient_roles": list(roles),
                "recipient_groups": list(groups)}

    def test_parents_include_guardian_and_form_emails_once(self):
        emails = announcements.build_recipients(self.conn, self._announcement(["parent"]))["emails"]
        self.assertEqual(sorted(emails), ["messua@village.test", "other@village.test", "parent@troop.test"])

    def test_group_filter_limits_guardians(self):
        emails = announcements.build_recipients(self.conn, self._announcement(["parent"], [self.group_id]))["emails"]
        self.assertEqual(sorted(emails), ["messua@village.test", "parent@troop.test"])

    def test_staff_audiences(self):
        emails = announcements.build_recipients(self.conn, self._announcement(["admin", "animation"]))["emails"]
        self.assertEqual(sorted(emails), ["admin@troop.test", "leader@troop.test"])


class AnnouncementApiTests(ApiTestCase):
    def _create(self, **fields):
        payload = {"subject": "Camp", "message": "Line one\nLine two", "recipient_roles": ["parent"]}
        payload.update(fields)
        return self.post("/api/announcements", self.leader_id, payload)

    def test_validation(self):
        self.assertEqual(self._create(subject="").get_json()["error"], "Subject and message are required")
        self.assertEqual(self._create(recipient_roles=["wizard"]).get_json()["error"], "No valid roles provided")
        self.assertEqual(self.post("/api/announcements", self.parent_id,
                                   {"subject": "s", "message": "m", "recipient_roles": ["parent"]}).status_code, 403)

    @mock.patch("announcements.whatsapp_service.send_whatsapp", return_value=(True, None))
    @mock.patch("announcements.email_service.send_announcement_email", return_value=(True, None))
    def test_send_now_logs_every_channel(self, send_email, send_whatsapp):
        self.conn.execute("UPDATE users SET whatsapp_phone_number = '514-555-0100' WHERE id = ?", (self.parent_id,))
        self.conn.commit()

        resp = self._create()
        self.assertEqual(resp.status_code, 201)
        body = resp.get_json()
        self.assertEqual(body["announcementStatus"], "sent")
        self.assertEqual(body["delivery"]["sent"], 2)
        send_email.assert_called_once_with("parent@troop.test", "Camp", "Line one\nLine two")
        self.assertIn("*Camp*", send_whatsapp.call_args[0][1])

        logs = self.conn.execute("SELECT channel, status, metadata FROM announcement_logs ORDER BY id").fetchall()
        self.assertEqual([(log["channel"], log["status"]) for log in logs], [("email", "sent"), ("whatsapp", "sent")])
        self.assertEqual(json.loads(logs[1]["metadata"]), {"phone_number": "514-555-0100"})

        row = self.conn.execute("SELECT status, sent_at FROM announcements WHERE id = ?", (body["id"],)).fetchone()
        self.assertEqual(row["status"], "sent")
        self.assertIsNotNone(row["sent_at"])

    @mock.patch("announcements.push_service.is_configured", return_value=False)
    @mock.patch("announcements.email_service.send_announcement_email", return_value=(False, "SMTP down"))
    def test_failures_make_partial(self, send_email, push_configured):
        self.conn.execute(
            "INSERT INTO subscribers (user_id, organization_id, endpoint, p256dh, auth) VALUES (?, ?, ?, ?, ?)",
            (self.parent_id, self.org_id, "https://push.test/a", "key", "auth")
        )
        self.conn.commit()

        body = self._create().get_json()
        self.assertEqual(body["announcementStatus"], "partial")
        logs = self.conn.execute("SELECT channel, status, error_message FROM announcement_logs").fetchall()
        self.assertEqual(sorted((log["channel"], log["error_message"]) for log in logs),
                         [("email", "SMTP down"), ("push", "VAPID keys not configured")])

    @mock.patch("announcements.email_service.send_announcement_email", side_effect=RuntimeError("boom"))
    def test_dispatch_error_marks_failed(self, send_email):
        body = self._create().get_json()
        self.assertEqual(body["announcementStatus"], "failed")

    @mock.patch("push_service.webpush", side_effect=requests.exceptions.ConnectionError("Connection refused"))
    @mock.patch("push_service.is_configured", return_value=True)
    @mock.patch("announcements.email_service.send_announcement_email", return_value=(True, None))
    def test_unreachable_push_service_is_a_logged_failure(self, send_email, push_configured, webpush):
        self.conn.execute(
            "INSERT INTO subscribers (user_id, organization_id, endpoint, p256dh, auth) VALUES (?, ?, ?, ?, ?)",
            (self.parent_id, self.org_id, "https://push.test/a", "key", "auth")
        )
        self.conn.commit()

        body = self._create().get_json()
        self.assertEqual(body["announcementStatus"], "partial")
        self.assertEqual((body["delivery"]["sent"], body["delivery"]["failed"]), (1, 1))
        logs = self.conn.execute("SELECT channel, status, error_message FROM announcement_logs ORDER BY id").fetchall()
        self.assertEqual([(log["channel"], log["status"]) for log in logs], [("email", "sent"), ("push", "failed")])
        self.assertTrue(logs[1]["error_message"].startswith("Connection error"))
        self.assertEqual(self.conn.execute("SELECT COUNT(*) FROM subscribers").fetchone()[0], 1)

    @mock.patch("announcements.whatsapp_service.send_whatsapp", side_effect=RuntimeError("boom"))
    @mock.patch("announcements.email_service.send_announcement_email", return_value=(True, None))
    def test_unexpected_error_keeps_logs_of_earlier_sends(self, send_email, send_whatsapp):
        self.conn.execute("UPDATE users SET whatsapp_phone_number = '514-555-0100' WHERE id = ?", (self.parent_id,))
        self.conn.commit()

        body = self._create().get_json()
        self.assertEqual(body["announcementStatus"], "failed")
        logs = self.conn.execute("SELECT channel, status FROM announcement_logs").fetchall()
        self.assertEqual([(log["channel"], log["status"]) for log in logs], [("email", "sent")])

    @mock.patch("announcements.email_service.send_announcement_email", return_value=(True, None))
    def test_database_stays_writable_while_messages_go_out(self, send_email):
        self.conn.execute("UPDATE users SET whatsapp_phone_number = '514-555-0100' WHERE id = ?", (self.parent_id,))
        self.conn.commit()

        def write_from_another_request(phone, message):
            other = sqlite3.connect(server.app.config['DATABASE_PATH'], timeout=0)
            try:
                other.execute(
                    "INSERT INTO organization_settings (organization_id, setting_key, setting_value) VALUES (?, ?, ?)",
                    (self.org_id, "written_during_send", json.dumps(True))
                )
                other.commit()
            finally:
                other.close()
            return True, None

        with mock.patch("announcements.whatsapp_service.send_whatsapp", side_effect=write_from_another_request):
            body = self._create().get_json()

        self.assertEqual(body["announcementStatus"], "sent")
        row = self.conn.execute("SELECT 1 FROM organization_settings WHERE setting_key = 'written_during_send'")
        self.assertIsNotNone(row.fetchone())

    def test_recipient_group_ids_are_stored(self):
        group_id = self.add_group()
        body = self._create(recipient_group_ids=[group_id], save_as_draft=True).get_json()
        row = self.conn.execute("SELECT recipient_groups FROM announcements WHERE id = ?", (body["id"],)).fetchone()
        self.assertEqual(json.loads(row["recipient_groups"]), [group_id])

    @mock.patch("announcements.email_service.send_announcement_email")
    def test_future_announcement_is_scheduled_not_sent(self, send_email):
        run_at = datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(days=2)
        body = self._create(scheduled_at=run_at.isoformat()).get_json()
        self.assertEqual(body["announcementStatus"], "scheduled")
        self.assertIsNone(body["delivery"])
        send_email.assert_not_called()

        stored = self.conn.execute("SELECT scheduled_at FROM announcements WHERE id = ?", (body["id"],)).fetchone()
        self.assertEqual(stored["scheduled_at"], run_at.strftime("%Y-%m-%d %H:%M:%S"))

    def test_draft(self):
        self.assertEqual(self._create(save_as_draft=True).get_json()["announcementStatus"], "draft")

    def test_listing_escapes_and_returns_templates(self):
        self.conn.execute(
            """INSERT INTO announcements (organization_id, created_by, subject, message, recipient_roles, status)
               VALUES (?, ?, ?, ?, ?, 'draft')""",
            (self.org_id, self.leader_id, "Hi", "<script>x</script>", json.dumps(["parent"]))
        )
        self.conn.execute(
            "INSERT INTO organization_settings (organization_id, setting_key, setting_value) VALUES (?, ?, ?)",
            (self.org_id, "announcement_templates", json.dumps([{"title": "Rappel"}]))
        )
        self.conn.execute(
            "INSERT INTO organization_settings (organization_id, setting_key, setting_value) VALUES (0, ?, ?)",
            ("announcement_templates", json.dumps([{"title": "Camp"}]))
        )
        self.conn.commit()

        body = self.get("/api/announcements", self.leader_id).get_json()
        self.assertEqual(body["announcements"][0]["message"], "&lt;script&gt;x&lt;/script&gt;")
        self.assertEqual(body["announcements"][0]["recipient_roles"], ["parent"])
        self.assertEqual(body["announcements"][0]["logs"], [])
        self.assertEqual(body["templates"], [{"title": "Rappel"}, {"title": "Camp"}])


class ScheduledProcessingTests(ApiTestCase):
    def _scheduled(self, when):
        cursor = self.conn.execute(
            """INSERT INTO announcements (organization_id, created_by, subject, message, recipient_roles,
                                          scheduled_at, status)
               VALUES (?, ?, 'Due', 'Message', ?, ?, 'scheduled')""",
            (self.org_id, self.leader_id, json.dumps(["animation"]), when)
        )
        self.conn.commit()
        return cursor.lastrowid

    @mock.patch("announcements.email_service.send_announcement_email", return_value=(True, None))
    def test_due_rows_are_claimed_once(self, send_email):
        due = self._scheduled("2000-01-01 00:00:00")
        later = self._scheduled("2999-01-01 00:00:00")

        self.assertEqual(announcements.process_scheduled_announcements(server.get_db_connection), 1)
        self.assertEqual(announcements.process_scheduled_announcements(server.get_db_connection), 0)
        send_email.assert_called_once_with("leader@troop.test", "Due", "Message")

        statuses = {row["id"]: row["status"] for row in self.conn.execute("SELECT id, status FROM announcements")}
        self.assertEqual(statuses, {due: "sent", later: "scheduled"})

    def test_overlapping_run_is_skipped(self):
        self._scheduled("2000-01-01 00:00:00")
        with announcements._processing_lock:
            self.assertEqual(announcements.process_scheduled_announcements(server.get_db_connection), 0)
        status = self.conn.execute("SELECT status FROM announcements").fetchone()["status"]
        self.assertEqual(status, "scheduled")

    def test_escape_for_listing_copies(self):
        original = {"subject": "<i>", "message": "a & b"}
        escaped = announcements.escape_for_listing(original)
        self.assertEqual(escaped["message"], "a &amp; b")
        self.assertEqual(original["message"], "a & b")


if __name__ == "__main__":
    unittest.main()
