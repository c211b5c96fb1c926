# =================================================================
#   Scout Troop Manager - Announcements
#   Recipient resolution, multi-channel dispatch with per-recipient
#   logs, and the background scheduler for deferred announcements.
# =================================================================

import atexit
import datetime
import html
import json
import logging
import threading

import bleach
from apscheduler.schedulers.background import BackgroundScheduler

import email_service
import push_service
import whatsapp_service
from two_factor import db_timestamp

logger = logging.getLogger(__name__)

ALLOWED_ROLES = ['admin', 'animation', 'parent']

# Audience name -> role bundles that receive it
AUDIENCE_ROLES = {
    'admin': ['district', 'unitadmin'],
    'animation': ['leader'],
    'parent': ['parent'],
}

SUBJECT_MAX_LENGTH = 255


def clean_text(value):
    """Plain text with any markup removed; outputs escape it again where needed."""
    cleaned = bleach.clean(str(value or ''), tags=[], attributes={}, strip=True)
    return html.unescape(cleaned).strip()


def parse_timestamp(value):
    """ISO-8601 string -> aware UTC datetime, or None. Naive values are taken as UTC."""
    if not value:
        return None
    if isinstance(value, datetime.datetime):
        parsed = value
    else:
        try:
            parsed = datetime.datetime.fromisoformat(str(value).strip().replace('Z', '+00:00'))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.timezone.utc)
    return parsed.astimezone(datetime.timezone.utc)


def normalize_announcement_payload(body):
    body = body or {}

    roles = body.get('recipient_roles')
    roles = [r for r in roles if r in ALLOWED_ROLES] if isinstance(roles, list) else []

    raw_groups = body.get('recipient_group_ids')
    if raw_groups is None:
        raw_groups = body.get('recipient_groups')
    groups = []
    for value in raw_groups if isinstance(raw_groups, list) else []:
        try:
            groups.append(int(value))
        except (TypeError, ValueError):
            continue

    scheduled_at = parse_timestamp(body.get('scheduled_at'))
    save_as_draft = bool(body.get('save_as_draft'))
    send_now = body.get('send_now')
    if send_now is None:
        send_now = scheduled_at is None and not save_as_draft

    return {
        'subject': clean_text(body.get('subject'))[:SUBJECT_MAX_LENGTH],
        'message': clean_text(body.get('message')),
        'recipient_roles': roles,
        'recipient_groups': groups,
        'scheduled_at': scheduled_at,
        'save_as_draft': save_as_draft,
        'send_now': bool(send_now),
    }


def determine_initial_status(payload, now=None):
    now = now or datetime.datetime.now(datetime.timezone.utc)
    if payload['save_as_draft']:
        return 'draft'
    scheduled_at = payload['scheduled_at']
    if payload['send_now'] or scheduled_at is None or scheduled_at <= now:
        return 'sending'
    return 'scheduled'


def _load_announcement(conn, announcement_id):
    row = conn.execute("SELECT * FROM announcements WHERE id = ?", (announcement_id,)).fetchone()
    if not row:
        return None
    announcement = dict(row)
    announcement['recipient_roles'] = json.loads(announcement['recipient_roles'] or '[]')
    announcement['recipient_groups'] = json.loads(announcement['recipient_groups'] or '[]')
    return announcement


# =================================================================
#   Recipients
# =================================================================

def _targeted_users(conn, organization_id, audiences):
    bundles = set()
    for audience in audiences:
        bundles.update(AUDIENCE_ROLES.get(audience, []))
    if not bundles:
        return []

    placeholders = ','.join('?' * len(bundles))
    wanted_ids = {row['id'] for row in conn.execute(
        f"SELECT id FROM roles WHERE role_name IN ({placeholders})", tuple(bundles)
    ).fetchall()}

    members = conn.execute(
        """SELECT u.id, LOWER(u.email) AS email, u.whatsapp_phone_number, uo.role_ids
           FROM user_organizations uo
           JOIN users u ON u.id = uo.user_id
           WHERE uo.organization_id = ?""",
        (organization_id,)
    ).fetchall()

    users = []
    for member in members:
        try:
            role_ids = set(json.loads(member['role_ids'] or '[]'))
        except ValueError:
            continue
        if role_ids & wanted_ids:
            users.append(member)
    return users


def build_recipients(conn, announcement):
    """
    Resolve everybody an announcement reaches.
    Returns {'emails': [...], 'whatsapp': [{'phone', 'user_id'}], 'subscriptions': [...]}
    """
    organization_id = announcement['organization_id']
    audiences = announcement['recipient_roles'] or ALLOWED_ROLES
    group_ids = announcement['recipient_groups'] or []

    users = _targeted_users(conn, organization_id, audiences)
    emails = [u['email'] for u in users if u['email']]
    whatsapp = [{'phone': u['whatsapp_phone_number'], 'user_id': u['id']}
                for u in users if u['whatsapp_phone_number']]

    if 'parent' in audiences:
        group_join = ''
        group_clause = ''
        params = [organization_id]
        if group_ids:
            group_join = "JOIN participant_groups pgr ON pgr.participant_id = {col} AND pgr.organization_id = ?"
            group_clause = f"AND pgr.group_id IN ({','.join('?' * len(group_ids))})"

        guardian_sql = f"""
            SELECT DISTINCT LOWER(g.courriel) AS email
            FROM parents_guardians g
            JOIN participant_guardians rel ON rel.guardian_id = g.id
            JOIN participant_organizations po ON po.participant_id = rel.participant_id
            {group_join.format(col='rel.participant_id')}
            WHERE po.organization_id = ?
              {group_clause}
              AND g.courriel IS NOT NULL AND g.courriel <> ''
        """
        form_sql = f"""
            SELECT DISTINCT LOWER(json_extract(fs.submission_data, '$.courriel')) AS email
            FROM form_submissions fs
            {group_join.format(col='fs.participant_id')}
            WHERE fs.organization_id = ?
              {group_clause}
              AND json_extract(fs.submission_data, '$.courriel') IS NOT NULL
              AND json_extract(fs.submission_data, '$.courriel') <> ''
        """
        if group_ids:
            params = [organization_id, organization_id] + group_ids

        emails.extend(row['email'] for row in conn.execute(guardian_sql, params).fetchall())
        emails.extend(row['email'] for row in conn.execute(form_sql, params).fetchall())

    unique_emails = []
    seen = set()
    for email in emails:
        if email and email not in seen:
            seen.add(email)
            unique_emails.append(email)

    subscriptions = []
    user_ids = [u['id'] for u in users]
    if user_ids:
        subscriptions = conn.execute(
            f"""SELECT endpoint, p256dh, auth, user_id FROM subscribers
                WHERE organization_id = ? AND user_id IN ({','.join('?' * len(user_ids))})""",
            [organization_id] + user_ids
        ).fetchall()

    return {'emails': unique_emails, 'whatsapp': whatsapp, 'subscriptions': subscriptions}


# =================================================================
#   Dispatch
# =================================================================

def _record_attempts(conn, announcement_id, attempts, expired_endpoints):
    """Write the collected delivery logs in one short transaction."""
    for attempt in attempts:
        conn.execute(
            """INSERT INTO announcement_logs
               (announcement_id, channel, recipient_email, recipient_user_id, status, error_message, metadata)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (announcement_id, attempt['channel'], attempt.get('recipient_email'),
             attempt.get('recipient_user_id'), 'sent' if attempt['ok'] else 'failed', attempt.get('error'),
             json.dumps(attempt['metadata']) if attempt.get('metadata') else None)
        )
    for endpoint in expired_endpoints:
        conn.execute("DELETE FROM subscribers WHERE endpoint = ?", (endpoint,))
    conn.commit()


def _send_all(announcement, recipients, attempts, expired_endpoints):
    subject = announcement['subject']
    message = announcement['message']

    for email in recipients['emails']:
        ok, error = email_service.send_announcement_email(email, subject, message)
        attempts.append({'channel': 'email', 'ok': ok, 'error': error, 'recipient_email': email})

    if recipients['subscriptions']:
        if not push_service.is_configured():
            attempts.append({'channel': 'push', 'ok': False, 'error': 'VAPID keys not configured'})
        else:
            payload = push_service.build_notification_payload(subject, message)
            payload['options']['tag'] = 'announcement'
            for subscription in recipients['subscriptions']:
                ok, error, expired = push_service.send_push(subscription, payload)
                if expired:
                    expired_endpoints.append(subscription['endpoint'])
                attempts.append({'channel': 'push', 'ok': ok, 'error': error,
                                 'recipient_user_id': subscription['user_id']})

    whatsapp_body = f"*{subject}*\n\n{message}"
    for target in recipients['whatsapp']:
        ok, error = whatsapp_service.send_whatsapp(target['phone'], whatsapp_body)
        attempts.append({'channel': 'whatsapp', 'ok': ok, 'error': error, 'recipient_user_id': target['user_id'],
                         'metadata': {'phone_number': target['phone']}})


def dispatch_announcement(conn, announcement):
    """
    Send an announcement on every channel and record one log row per attempt.
    Final status is 'partial' when anything failed, otherwise 'sent'.

    No transaction is open while messages go out; the logs are written
    afterwards, including those of attempts made before an unexpected error.
    """
    announcement_id = announcement['id']
    recipients = build_recipients(conn, announcement)
    if conn.in_transaction:
        conn.commit()

    attempts = []
    expired_endpoints = []
    try:
        _send_all(announcement, recipients, attempts, expired_endpoints)
    finally:
        _record_attempts(conn, announcement_id, attempts, expired_endpoints)

    sent = sum(1 for attempt in attempts if attempt['ok'])
    failed = len(attempts) - sent
    final_status = 'partial' if failed else 'sent'
    now = db_timestamp()
    conn.execute(
        "UPDATE announcements SET status = ?, sent_at = ?, updated_at = ? WHERE id = ?",
        (final_status, now, now, announcement_id)
    )
    conn.commit()

    logger.info(f"[ANNOUNCEMENTS] #{announcement_id} dispatched - status: {final_status}, "
                f"sent: {sent}, failed: {failed}")
    return {'status': final_status, 'sent': sent, 'failed': failed}


def dispatch_by_id(conn, announcement_id):
    """Dispatch one announcement, marking it failed if anything raises."""
    announcement = _load_announcement(conn, announcement_id)
    if not announcement:
        return None
    try:
        return dispatch_announcement(conn, announcement)
    except Exception as e:
        conn.rollback()
        logger.error(f"[ANNOUNCEMENTS] #{announcement_id} dispatch failed: {e}", exc_info=True)
        conn.execute(
            "UPDATE announcements SET status = 'failed', updated_at = ? WHERE id = ?",
            (db_timestamp(), announcement_id)
        )
        conn.commit()
        return {'status': 'failed', 'sent': 0, 'failed': 0}


_processing_lock = threading.Lock()


def process_scheduled_announcements(connect):
    """
    Claim every due scheduled announcement and dispatch it.
    connect: zero-argument callable returning a new sqlite3 connection.
    Returns the number of announcements processed; a call made while
    another one is still running returns 0 immediately.
    """
    if not _processing_lock.acquire(blocking=False):
        logger.info("[ANNOUNCEMENTS] Processing already in progress, skipping")
        return 0

    try:
        conn = connect()
        try:
            now = db_timestamp()
            due = conn.execute(
                "SELECT id FROM announcements WHERE status = 'scheduled' AND scheduled_at <= ? ORDER BY scheduled_at",
                (now,)
            ).fetchall()

            claimed = []
            for row in due:
                cursor = conn.execute(
                    "UPDATE announcements SET status = 'sending', updated_at = ? WHERE id = ? AND status = 'scheduled'",
                    (now, row['id'])
                )
                if cursor.rowcount:
                    claimed.append(row['id'])
            conn.commit()

            for announcement_id in claimed:
                dispatch_by_id(conn, announcement_id)

            if claimed:
                logger.info(f"[ANNOUNCEMENTS] Processed {len(claimed)} scheduled announcement(s)")
            return len(claimed)
        finally:
            conn.close()
    finally:
        _processing_lock.release()


class AnnouncementScheduler:
    """
    Runs deferred announcements. Each scheduled announcement gets a one-shot
    job at its send time; an interval job catches anything missed (restarts,
    misfires, rows edited directly in the database).
    """

    FALLBACK_JOB_ID = 'announcement_fallback'

    def __init__(self, connect, fallback_minutes=60):
        self.connect = connect
        self.fallback_minutes = fallback_minutes
        self.scheduler = BackgroundScheduler(timezone=datetime.timezone.utc)

    @property
    def running(self):
        return self.scheduler.running

    def start(self):
        self.scheduler.add_job(
            func=self.run_due,
            trigger="interval",
            minutes=self.fallback_minutes,
            id=self.FALLBACK_JOB_ID,
            name="Announcement fallback check",
            replace_existing=True
        )
        self.scheduler.start()
        atexit.register(self.shutdown)

        # overdue rows from before the restart, and future rows needing a timer
        self.scheduler.add_job(func=self.run_due, trigger="date", id='announcement_startup',
                               name="Announcement startup check", replace_existing=True)
        conn = self.connect()
        try:
            pending = conn.execute(
                "SELECT id, scheduled_at FROM announcements WHERE status = 'scheduled' AND scheduled_at IS NOT NULL"
            ).fetchall()
        finally:
            conn.close()
        for row in pending:
            run_at = parse_timestamp(row['scheduled_at'].replace(' ', 'T'))
            if run_at and run_at > datetime.datetime.now(datetime.timezone.utc):
                self.schedule(row['id'], run_at)

        logger.info(f"[ANNOUNCEMENTS] Scheduler started - fallback every {self.fallback_minutes} min, "
                    f"{len(pending)} pending")

    def schedule(self, announcement_id, run_at):
        if not self.scheduler.running:
            return
        self.scheduler.add_job(
            func=self.run_due,
            trigger="date",
            run_date=run_at,
            id=f"announcement_{announcement_id}",
            name=f"Announcement #{announcement_id}",
            replace_existing=True,
            misfire_grace_time=300
        )

    def run_due(self):
        return process_scheduled_announcements(self.connect)

    def shutdown(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)


def escape_for_listing(announcement):
    """Copy of a row safe to render in the SPA list."""
    item = dict(announcement)
    item['message'] = html.escape(item.get('message') or '')
    item['subject'] = html.escape(item.get('subject') or '')
    return item
