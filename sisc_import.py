# =================================================================
#   Scout Troop Manager - SISC Registry Import
#   Reads the semicolon-separated export of the national registry and
#   upserts participants, guardians, parent accounts and leaders.
# =================================================================

import json
import logging
import uuid

from permissions import get_role_ids

logger = logging.getLogger(__name__)

RELATIONSHIP_MAP = {
    'Mre': 'Mère',
    'Pre': 'Père',
    'Grd': 'Grand-parent',
    'Tut': 'Tuteur',
    'Aut': 'Autre',
}

GUARDIAN_PREFIXES = ('r1_', 'r2_')


class ImportValidationError(ValueError):
    """The uploaded file cannot be imported at all."""


def parse_csv_line(line, delimiter=';'):
    """Split one CSV line, honouring double quotes and doubled quotes inside them."""
    fields = []
    current = []
    in_quotes = False
    i = 0
    while i < len(line):
        char = line[i]
        if char == '"':
            if in_quotes and i + 1 < len(line) and line[i + 1] == '"':
                current.append('"')
                i += 1
            else:
                in_quotes = not in_quotes
        elif char == delimiter and not in_quotes:
            fields.append(''.join(current).strip())
            current = []
        else:
            current.append(char)
        i += 1
    fields.append(''.join(current).strip())
    return fields


def parse_date(value):
    """'YYYYMMDD' -> 'YYYY-MM-DD'."""
    if not value or len(value) != 8 or not value.isdigit():
        return None
    return f"{value[0:4]}-{value[4:6]}-{value[6:8]}"


def clean_phone(value):
    if not value:
        return None
    digits = ''.join(ch for ch in value if ch.isdigit())
    return digits or None


def _sex(value):
    value = (value or '').upper()
    if value == 'H':
        return 'M'
    if value == 'F':
        return 'F'
    return None


def _is_yes(value):
    return value in ('O', 'Oui', 'oui', '1', 'true')


def build_form_data(get, form_type):
    """Map SISC columns onto the submission payload of a given form type."""
    base = {
        'first_name': get('prenom'),
        'last_name': get('nom'),
        'date_naissance': parse_date(get('naissance')),
    }

    if form_type == 'fiche_sante':
        base['notes'] = get('notes') or ''
        return base

    if form_type in ('autorisation', 'autorisations'):
        return {
            'first_name': base['first_name'],
            'last_name': base['last_name'],
            'autorisation_photo': 'yes' if _is_yes(get('photos')) else 'no',
            'peut_quitter_seul': 'yes' if _is_yes(get('quitter')) else 'no',
        }

    base.update({
        'sexe': _sex(get('sexe')),
        'adresse': get('adresse'),
        'ville': get('ville'),
        'province': get('province'),
        'code_postal': get('code_postal'),
        'telephone': clean_phone(get('tel_res')),
        'courriel': get('courriel'),
    })
    if form_type in ('participant_registration', 'inscription'):
        base.update({
            'telephone_travail': clean_phone(get('tel_tra')),
            'telephone_cellulaire': clean_phone(get('tel_autre')),
            'totem': get('totem'),
            'ecole': get('ecole'),
            'ecole_niveau': get('ecole_niveau'),
            'annees_scoutes': get('annees_scoutes'),
            'annees_jeunes': get('annees_jeunes'),
        })
    return base


class SiscImporter:
    """
    Imports one SISC file into one organization.

    Every row runs inside its own savepoint so a bad row is rolled back and
    reported without aborting the rest of the file.
    """

    def __init__(self, conn, organization_id):
        self.conn = conn
        self.organization_id = organization_id
        self.stats = {
            'participantsCreated': 0,
            'participantsUpdated': 0,
            'guardiansCreated': 0,
            'guardiansUpdated': 0,
            'animationUsersCreated': 0,
            'animationUsersUpdated': 0,
            'usersCreated': 0,
            'userParticipantLinksCreated': 0,
            'formSubmissionsCreated': 0,
            'errors': [],
        }
        self._leader_role_ids = get_role_ids(conn, ['animation'])
        self._parent_role_ids = get_role_ids(conn, ['parent'])
        self._form_types = None

    # --- entry point ---

    def run(self, csv_content):
        lines = [line for line in csv_content.replace('\r\n', '\n').split('\n') if line.strip()]
        if len(lines) < 2:
            raise ImportValidationError('CSV must have header and at least one data row')

        header_map = {}
        for index, header in enumerate(parse_csv_line(lines[0])):
            header_map[header.replace('"', '')] = index

        logger.info(f"[IMPORT] Starting SISC import of {len(lines) - 1} rows into org {self.organization_id}")

        if self.conn.in_transaction:
            self.conn.commit()
        self.conn.execute("BEGIN")
        try:
            for row_number, line in enumerate(lines[1:], start=2):
                values = parse_csv_line(line)

                def get(field, _values=values):
                    idx = header_map.get(field)
                    if idx is None or idx >= len(_values):
                        return None
                    return _values[idx].replace('"', '') or None

                self.conn.execute("SAVEPOINT sisc_row")
                try:
                    self._import_row(row_number, get)
                    self.conn.execute("RELEASE SAVEPOINT sisc_row")
                except Exception as e:
                    self.conn.execute("ROLLBACK TO SAVEPOINT sisc_row")
                    self.conn.execute("RELEASE SAVEPOINT sisc_row")
                    self.stats['errors'].append(f"Row {row_number}: {e}")
                    logger.error(f"[IMPORT] Row {row_number} failed: {e}")
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise

        logger.info(f"[IMPORT] Completed: {json.dumps({k: v for k, v in self.stats.items() if k != 'errors'})}, "
                    f"{len(self.stats['errors'])} errors")
        return self.stats

    def verification(self):
        org = self.organization_id
        return {
            'totalParticipants': self.conn.execute(
                "SELECT COUNT(*) FROM participant_organizations WHERE organization_id = ?", (org,)
            ).fetchone()[0],
            'totalGuardians': self.conn.execute(
                """SELECT COUNT(DISTINCT pg.guardian_id) FROM participant_guardians pg
                   JOIN participant_organizations po ON po.participant_id = pg.participant_id
                   WHERE po.organization_id = ?""", (org,)
            ).fetchone()[0],
            'totalUserParticipantLinks': self.conn.execute(
                """SELECT COUNT(*) FROM user_participants up
                   JOIN participant_organizations po ON po.participant_id = up.participant_id
                   WHERE po.organization_id = ?""", (org,)
            ).fetchone()[0],
        }

    # --- rows ---

    def _import_row(self, row_number, get):
        last_name = get('nom')
        first_name = get('prenom')
        situation = (get('situation') or '').lower()

        if not last_name or not first_name:
            self.stats['errors'].append(f"Row {row_number}: Missing name")
            return

        if situation == 'a':
            self._import_leader(row_number, get, first_name, last_name)
            return

        if situation and situation != 'j':
            self.stats['errors'].append(f"Row {row_number}: Invalid situation '{situation}'")
            return

        participant_id = self._upsert_participant(first_name, last_name, parse_date(get('naissance')))
        self._upsert_form_submissions(participant_id, get)

        for prefix in GUARDIAN_PREFIXES:
            self._import_guardian(participant_id, prefix, get)

    def _import_leader(self, row_number, get, first_name, last_name):
        email = (get('courriel') or '').lower()
        if not email:
            self.stats['errors'].append(f"Row {row_number}: Missing email for animation user")
            return

        full_name = f"{first_name} {last_name}".strip()
        user_id, created = self._upsert_user(email, full_name, verified=True, update_name=True)
        if created:
            self.stats['animationUsersCreated'] += 1
        else:
            self.stats['animationUsersUpdated'] += 1

        if not self._leader_role_ids:
            raise RuntimeError("Leader role not found in roles table")

        self.conn.execute(
            """INSERT INTO user_organizations (user_id, organization_id, role_ids) VALUES (?, ?, ?)
               ON CONFLICT (user_id, organization_id) DO UPDATE SET role_ids = excluded.role_ids""",
            (user_id, self.organization_id, json.dumps(self._leader_role_ids))
        )

    def _upsert_participant(self, first_name, last_name, birth_date):
        existing = self.conn.execute(
            """SELECT p.id FROM participants p
               JOIN participant_organizations po ON p.id = po.participant_id
               WHERE LOWER(p.first_name) = LOWER(?) AND LOWER(p.last_name) = LOWER(?)
                 AND p.date_naissance IS ? AND po.organization_id = ?""",
            (first_name, last_name, birth_date, self.organization_id)
        ).fetchone()

        if existing:
            self.stats['participantsUpdated'] += 1
            return existing['id']

        cursor = self.conn.execute(
            "INSERT INTO participants (first_name, last_name, date_naissance) VALUES (?, ?, ?)",
            (first_name, last_name, birth_date)
        )
        self.conn.execute(
            "INSERT OR IGNORE INTO participant_organizations (participant_id, organization_id) VALUES (?, ?)",
            (cursor.lastrowid, self.organization_id)
        )
        self.stats['participantsCreated'] += 1
        return cursor.lastrowid

    def _organization_form_types(self):
        if self._form_types is None:
            rows = self.conn.execute(
                "SELECT form_type FROM organization_form_formats WHERE organization_id = ?",
                (self.organization_id,)
            ).fetchall()
            self._form_types = [row['form_type'] for row in rows]
            if 'participant_registration' not in self._form_types and 'inscription' not in self._form_types:
                self._form_types.append('participant_registration')
            if 'fiche_sante' not in self._form_types:
                self._form_types.append('fiche_sante')
        return self._form_types

    def _upsert_form_submissions(self, participant_id, get):
        for form_type in self._organization_form_types():
            payload = json.dumps(build_form_data(get, form_type))
            existing = self.conn.execute(
                """SELECT id FROM form_submissions
                   WHERE participant_id = ? AND organization_id = ? AND form_type = ?""",
                (participant_id, self.organization_id, form_type)
            ).fetchone()
            if existing:
                self.conn.execute(
                    "UPDATE form_submissions SET submission_data = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                    (payload, existing['id'])
                )
            else:
                self.conn.execute(
                    """INSERT INTO form_submissions (organization_id, participant_id, form_type, submission_data)
                       VALUES (?, ?, ?, ?)""",
                    (self.organization_id, participant_id, form_type, payload)
                )
                self.stats['formSubmissionsCreated'] += 1

    def _import_guardian(self, participant_id, prefix, get):
        nom = get(f'{prefix}nom')
        prenom = get(f'{prefix}prenom')
        if not nom and not prenom:
            return

        email = (get(f'{prefix}courriel') or '').lower() or None
        raw_lien = get(f'{prefix}lien')
        lien = RELATIONSHIP_MAP.get(raw_lien, raw_lien or 'Autre')
        phones = (
            clean_phone(get(f'{prefix}tel_res')),
            clean_phone(get(f'{prefix}tel_tra')),
            clean_phone(get(f'{prefix}tel_autre')),
        )

        existing = None
        if email:
            existing = self.conn.execute(
                "SELECT id FROM parents_guardians WHERE LOWER(courriel) = ?", (email,)
            ).fetchone()
        if not existing and nom and prenom:
            existing = self.conn.execute(
                "SELECT id FROM parents_guardians WHERE LOWER(nom) = LOWER(?) AND LOWER(prenom) = LOWER(?)",
                (nom, prenom)
            ).fetchone()

        if existing:
            guardian_id = existing['id']
            self.conn.execute(
                """UPDATE parents_guardians SET
                     telephone_residence = COALESCE(?, telephone_residence),
                     telephone_travail = COALESCE(?, telephone_travail),
                     telephone_cellulaire = COALESCE(?, telephone_cellulaire),
                     courriel = COALESCE(?, courriel)
                   WHERE id = ?""",
                phones + (email, guardian_id)
            )
            self.stats['guardiansUpdated'] += 1
        else:
            cursor = self.conn.execute(
                """INSERT INTO parents_guardians
                   (nom, prenom, courriel, telephone_residence, telephone_travail, telephone_cellulaire)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (nom or '', prenom or '', email) + phones
            )
            guardian_id = cursor.lastrowid
            self.stats['guardiansCreated'] += 1

        self.conn.execute(
            """INSERT INTO participant_guardians (participant_id, guardian_id, lien) VALUES (?, ?, ?)
               ON CONFLICT (participant_id, guardian_id) DO UPDATE SET lien = excluded.lien""",
            (participant_id, guardian_id, lien)
        )

        if email:
            self._link_parent_account(guardian_id, participant_id, email, f"{prenom or ''} {nom or ''}".strip())

    def _link_parent_account(self, guardian_id, participant_id, email, full_name):
        user_id, created = self._upsert_user(email, full_name, verified=False, update_name=False)
        if created:
            self.stats['usersCreated'] += 1

        if not self._parent_role_ids:
            raise RuntimeError("Parent role not found in roles table")

        self.conn.execute(
            "INSERT OR IGNORE INTO user_organizations (user_id, organization_id, role_ids) VALUES (?, ?, ?)",
            (user_id, self.organization_id, json.dumps(self._parent_role_ids))
        )
        self.conn.execute(
            "INSERT OR IGNORE INTO guardian_users (guardian_id, user_id) VALUES (?, ?)",
            (guardian_id, user_id)
        )
        self.conn.execute("UPDATE parents_guardians SET user_uuid = ? WHERE id = ?", (user_id, guardian_id))
        cursor = self.conn.execute(
            "INSERT OR IGNORE INTO user_participants (user_id, participant_id) VALUES (?, ?)",
            (user_id, participant_id)
        )
        if cursor.rowcount > 0:
            self.stats['userParticipantLinksCreated'] += 1

    def _upsert_user(self, email, full_name, verified, update_name):
        """Returns (user_id, created)."""
        existing = self.conn.execute("SELECT id FROM users WHERE email = ?", (email,)).fetchone()
        if existing:
            if update_name:
                self.conn.execute(
                    "UPDATE users SET full_name = ?, is_verified = ? WHERE id = ?",
                    (full_name, 1 if verified else 0, existing['id'])
                )
            return existing['id'], False

        user_id = str(uuid.uuid4())
        self.conn.execute(
            "INSERT INTO users (id, email, password, full_name, is_verified) VALUES (?, ?, '', ?, ?)",
            (user_id, email, full_name, 1 if verified else 0)
        )
        return user_id, True
