import json
import unittest

from support import ApiTestCase

import permissions
from sisc_import import ImportValidationError, SiscImporter, clean_phone, parse_csv_line, parse_date

HEADER = "nom;prenom;situation;naissance;sexe;courriel;r1_nom;r1_prenom;r1_courriel;r1_lien;r1_tel_res;" \
         "r2_nom;r2_prenom;r2_courriel;r2_lien"

ROWS = [
    'Jungle;Mowgli;j;20140502;H;;Jungle;Messua;Messua@Village.test;Mre;"(514) 555-0100";Jungle;Nathoo;;Pre',
    "Wolf;Akela;a;;;Akela@Troop.test;;;;;;;;;",
    "Khan;Shere;x;20100101;;;;;;;;;;;",
    ";Nameless;j;;;;;;;;;;;;",
]


def sisc_file(*rows):
    return "\r\n".join((HEADER,) + rows) + "\r\n"


class ParsingTests(unittest.TestCase):
    def test_csv_line_quotes(self):
        self.assertEqual(parse_csv_line('a;"b;c";"say ""hi""";'), ["a", "b;c", 'say "hi"', ""])

    def test_dates_and_phones(self):
        self.assertEqual(parse_date("20140502"), "2014-05-02")
        self.assertIsNone(parse_date("2014-05-02"))
        self.assertIsNone(parse_date(None))
        self.assertEqual(clean_phone("(514) 555-0100"), "5145550100")
        self.assertIsNone(clean_phone("n/a"))


class SiscImporterTests(ApiTestCase):
    def _run(self, content):
        importer = SiscImporter(self.conn, self.org_id)
        return importer, importer.run(content)

    def test_first_import_creates_everything(self):
        importer, stats = self._run(sisc_file(*ROWS))

        self.assertEqual(stats["participantsCreated"], 1)
        self.assertEqual(stats["guardiansCreated"], 2)
        self.assertEqual(stats["usersCreated"], 1)
        self.assertEqual(stats["userParticipantLinksCreated"], 1)
        self.assertEqual(stats["animationUsersCreated"], 1)
        self.assertEqual(stats["formSubmissionsCreated"], 2)
        self.assertEqual(stats["errors"], ["Row 4: Invalid situation 'x'", "Row 5: Missing name"])

        participant = self.conn.execute("SELECT id, date_naissance FROM participants WHERE first_name = 'Mowgli'").fetchone()
        self.assertEqual(participant["date_naissance"], "2014-05-02")

        guardians = {row["prenom"]: row for row in self.conn.execute(
            """SELECT g.prenom, g.courriel, g.telephone_residence, g.user_uuid, pg.lien
               FROM parents_guardians g JOIN participant_guardians pg ON pg.guardian_id = g.id""")}
        self.assertEqual(guardians["Messua"]["lien"], "Mère")
        self.assertEqual(guardians["Nathoo"]["lien"], "Père")
        self.assertEqual(guardians["Messua"]["courriel"], "messua@village.test")
        self.assertEqual(guardians["Messua"]["telephone_residence"], "5145550100")
        self.assertIsNone(guardians["Nathoo"]["user_uuid"])

        parent = self.conn.execute("SELECT id, is_verified FROM users WHERE email = 'messua@village.test'").fetchone()
        self.assertEqual(parent["is_verified"], 0)
        self.assertEqual(guardians["Messua"]["user_uuid"], parent["id"])
        membership = permissions.verify_organization_membership(self.conn, parent["id"], self.org_id)
        self.assertEqual(membership["roles"], ["parent"])
        linked = self.conn.execute("SELECT participant_id FROM user_participants WHERE user_id = ?",
                                   (parent["id"],)).fetchall()
        self.assertEqual([row["participant_id"] for row in linked], [participant["id"]])

        leader = self.conn.execute("SELECT id, full_name, is_verified FROM users WHERE email = 'akela@troop.test'").fetchone()
        self.assertEqual((leader["full_name"], leader["is_verified"]), ("Akela Wolf", 1))
        self.assertEqual(permissions.verify_organization_membership(self.conn, leader["id"], self.org_id)["role"],
                         "leader")

        forms = {row["form_type"]: json.loads(row["submission_data"]) for row in self.conn.execute(
            "SELECT form_type, submission_data FROM form_submissions WHERE participant_id = ?", (participant["id"],))}
        self.assertEqual(set(forms), {"participant_registration", "fiche_sante"})
        self.assertEqual(forms["participant_registration"]["sexe"], "M")

        self.assertEqual(importer.verification(), {"totalParticipants": 1, "totalGuardians": 2,
                                                   "totalUserParticipantLinks": 1})

    def test_second_import_updates_in_place(self):
        self._run(sisc_file(ROWS[0], ROWS[1]))
        _, stats = self._run(sisc_file(ROWS[0], ROWS[1]))

        self.assertEqual(stats["participantsCreated"], 0)
        self.assertEqual(stats["participantsUpdated"], 1)
        self.assertEqual(stats["guardiansUpdated"], 2)
        self.assertEqual(stats["usersCreated"], 0)
        self.assertEqual(stats["userParticipantLinksCreated"], 0)
        self.assertEqual(stats["animationUsersUpdated"], 1)
        self.assertEqual(stats["formSubmissionsCreated"], 0)
        self.assertEqual(self.conn.execute("SELECT COUNT(*) FROM participants").fetchone()[0], 1)
        self.assertEqual(self.conn.execute("SELECT COUNT(*) FROM form_submissions").fetchone()[0], 2)

    def test_existing_account_keeps_its_roles(self):
        row = ROWS[0].replace("Messua@Village.test", "leader@troop.test")
        _, stats = self._run(sisc_file(row))
        self.assertEqual(stats["usersCreated"], 0)
        membership = permissions.verify_organization_membership(self.conn, self.leader_id, self.org_id)
        self.assertEqual(membership["roles"], ["leader"])

    def test_organization_form_types_are_used(self):
        self.conn.execute("INSERT INTO organization_form_formats (organization_id, form_type) VALUES (?, 'inscription')",
                          (self.org_id,))
        self.conn.commit()
        self._run(sisc_file(ROWS[0]))
        types = {row[0] for row in self.conn.execute("SELECT form_type FROM form_submissions")}
        self.assertEqual(types, {"inscription", "fiche_sante"})

    def test_header_only_is_rejected(self):
        with self.assertRaises(ImportValidationError):
            SiscImporter(self.conn, self.org_id).run(HEADER + "\n\n")


class SiscApiTests(ApiTestCase):
    def test_import_endpoint(self):
        resp = self.post("/api/import-sisc", self.admin_id, {"csvContent": sisc_file(ROWS[0])})
        self.assertEqual(resp.status_code, 200)
        body = resp.get_json()
        self.assertEqual(body["stats"]["participantsCreated"], 1)
        self.assertEqual(body["verification"]["totalParticipants"], 1)

    def test_validation_and_permissions(self):
        resp = self.post("/api/import-sisc", self.admin_id, {"csvContent": HEADER})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.get_json()["error"], "CSV must have header and at least one data row")
        self.assertEqual(self.post("/api/import-sisc", self.admin_id, {}).status_code, 400)
        self.assertEqual(self.post("/api/import-sisc", self.leader_id,
                                   {"csvContent": sisc_file(ROWS[0])}).status_code, 403)


if __name__ == "__main__":
    unittest.main()
