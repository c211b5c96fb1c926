# =================================================================
#   Scout Troop Manager - Offline Sync Engine
#   Prepares data bundles for camps run without connectivity and
#   replays the device outbox once the leader is back online.
#
#   Flow:
#     Device --prepare-activity--> bundle cached on the device
#     Device --sync-attendance--> queued actions applied server side
# =================================================================

import datetime
import json
import logging
import math

from attendance import VALID_STATUSES, mark_attendance
from points import get_point_system_rules

logger = logging.getLogger(__name__)

ACTION_UPDATE_ATTENDANCE = 'updateAttendance'


class OfflineRangeError(ValueError):
    """The requested preparation window is invalid."""


def _parse_date(value, field):
    if not value:
        raise OfflineRangeError(f"{field} is required")
    try:
        return datetime.date.fromisoformat(str(value)[:10])
    except ValueError:
        raise OfflineRangeError(f"Invalid {field}")


def _replay_date(value):
    try:
        return _parse_date(value, 'date').isoformat()
    except OfflineRangeError:
        return None


class OfflineSyncEngine:
    """
    Offline support for one organization.

    Strategy: the device downloads a self-contained bundle for a date range
    before leaving, works against it, and pushes an outbox of actions back.
    Each outbox action carries a client id so a retried push is harmless.
    """

    def __init__(self, conn, organization_id, max_days=14, cache_days=10):
        self.conn = conn
        self.organization_id = organization_id
        self.max_days = max_days
        self.cache_days = cache_days

    # --- preparation ---

    def validate_range(self, start_date, end_date):
        start = _parse_date(start_date, 'start_date')
        end = _parse_date(end_date, 'end_date')
        if end < start:
            raise OfflineRangeError("End date must be on or after start date")
        if (end - start).days > self.max_days:
            raise OfflineRangeError(f"Date range cannot exceed {self.max_days} days")
        return start, end

    def prepare_activity(self, start_date, end_date):
        start, end = self.validate_range(start_date, end_date)
        org = self.organization_id
        dates = [(start + datetime.timedelta(days=i)).isoformat() for i in range((end - start).days + 1)]

        participants = [dict(row) for row in self.conn.execute(
            """SELECT p.id, p.first_name, p.last_name, p.date_naissance,
                      pg.group_id, g.name AS group_name, g.section
               FROM participants p
               JOIN participant_organizations po ON po.participant_id = p.id
               LEFT JOIN participant_groups pg ON pg.participant_id = p.id AND pg.organization_id = po.organization_id
               LEFT JOIN scout_groups g ON g.id = pg.group_id
               WHERE po.organization_id = ?
               ORDER BY p.first_name, p.last_name""",
            (org,)
        ).fetchall()]

        groups = [dict(row) for row in self.conn.execute(
            "SELECT id, name, section FROM scout_groups WHERE organization_id = ? ORDER BY name", (org,)
        ).fetchall()]

        attendance = [dict(row) for row in self.conn.execute(
            """SELECT id, participant_id, date, status FROM attendance
               WHERE organization_id = ? AND date BETWEEN ? AND ?
               ORDER BY date""",
            (org, dates[0], dates[-1])
        ).fetchall()]
        attendance_by_date = {d: [] for d in dates}
        for row in attendance:
            attendance_by_date.setdefault(row['date'], []).append(row)

        honors = [dict(row) for row in self.conn.execute(
            """SELECT id, participant_id, date, reason FROM honors
               WHERE organization_id = ? AND date BETWEEN ? AND ?""",
            (org, dates[0], dates[-1])
        ).fetchall()]

        templates = [dict(row) for row in self.conn.execute(
            """SELECT id, template_key, name, section, level_count, levels, image
               FROM badge_templates WHERE organization_id IN (?, 0) ORDER BY name""",
            (org,)
        ).fetchall()]
        for template in templates:
            template['levels'] = json.loads(template['levels']) if template['levels'] else None

        progress = [dict(row) for row in self.conn.execute(
            """SELECT id, participant_id, badge_template_id, level, star_type, status, date_obtention
               FROM badge_progress WHERE organization_id = ?""",
            (org,)
        ).fetchall()]

        now = datetime.datetime.now(datetime.timezone.utc)
        logger.info(f"[OFFLINE] Prepared bundle for org {org}: {dates[0]} to {dates[-1]}, "
                    f"{len(participants)} participants")

        return {
            'dates': dates,
            'participants': participants,
            'groups': groups,
            'attendance': {'byDate': attendance_by_date, 'all': attendance},
            'honors': honors,
            'badges': {'templates': templates, 'progress': progress},
            'preparedAt': now.isoformat(),
            'expiresAt': (now + datetime.timedelta(days=self.cache_days)).isoformat(),
        }

    # --- status ---

    def upcoming_multi_day_activities(self, today=None):
        """Runs of consecutive prepared meeting dates from today on, two days or longer."""
        today = today or datetime.date.today()
        rows = self.conn.execute(
            """SELECT date, endroit FROM reunion_preparations
               WHERE organization_id = ? AND date >= ? ORDER BY date""",
            (self.organization_id, today.isoformat())
        ).fetchall()

        activities = []
        run = []
        for row in rows:
            current = datetime.date.fromisoformat(row['date'])
            if run and (current - run[-1][0]).days != 1:
                activities.append(run)
                run = []
            run.append((current, row['endroit']))
        if run:
            activities.append(run)

        result = []
        for run in activities:
            if len(run) < 2:
                continue
            result.append({
                'start_date': run[0][0].isoformat(),
                'end_date': run[-1][0].isoformat(),
                'days': len(run),
                'location': next((loc for _, loc in run if loc), None),
                'can_prepare': len(run) - 1 <= self.max_days,
            })
        return result

    def get_status(self):
        org = self.organization_id
        participant_count = self.conn.execute(
            "SELECT COUNT(*) FROM participant_organizations WHERE organization_id = ?", (org,)
        ).fetchone()[0]
        group_count = self.conn.execute(
            "SELECT COUNT(*) FROM scout_groups WHERE organization_id = ?", (org,)
        ).fetchone()[0]
        badge_count = self.conn.execute(
            "SELECT COUNT(*) FROM badge_templates WHERE organization_id IN (?, 0)", (org,)
        ).fetchone()[0]

        # participant rows + attendance per participant + groups + badge templates, in KB
        estimated_kb_per_day = math.ceil(
            participant_count * 1 + group_count * 0.5 + participant_count * 0.5 + badge_count * 0.3
        )

        return {
            'upcomingActivities': self.upcoming_multi_day_activities(),
            'stats': {
                'participantCount': participant_count,
                'groupCount': group_count,
                'badgeCount': badge_count,
                'estimatedKBPerDay': estimated_kb_per_day,
            },
            'maxDays': self.max_days,
        }

    # --- outbox replay ---

    def replay_outbox(self, actions, user_id, can_access_participant):
        """
        Apply queued offline actions in one transaction.

        can_access_participant: callable(participant_id) -> bool
        Returns {'applied': [...], 'skipped': [...], 'failed': [...], 'pointUpdates': [...]}.
        """
        result = {'applied': [], 'skipped': [], 'failed': [], 'pointUpdates': []}
        rules = get_point_system_rules(self.conn, self.organization_id)

        try:
            for action in actions:
                if not isinstance(action, dict):
                    result['failed'].append({'id': None, 'error': 'Invalid action'})
                    continue
                action_id = str(action.get('id') or '').strip()
                action_type = action.get('type')
                if not action_id:
                    result['failed'].append({'id': None, 'error': 'Missing action id'})
                    continue

                already = self.conn.execute(
                    "SELECT 1 FROM offline_sync_actions WHERE client_action_id = ? AND organization_id = ?",
                    (action_id, self.organization_id)
                ).fetchone()
                if already:
                    result['skipped'].append(action_id)
                    continue

                if action_type != ACTION_UPDATE_ATTENDANCE:
                    result['failed'].append({'id': action_id, 'error': f"Unsupported action type: {action_type}"})
                    continue

                data = action.get('data')
                if not isinstance(data, dict):
                    data = {}
                status = data.get('status')
                date = _replay_date(data.get('date'))
                participant_ids = data.get('participant_ids')
                if (status not in VALID_STATUSES or not date
                        or not isinstance(participant_ids, list) or not participant_ids
                        or not all(type(pid) is int for pid in participant_ids)):
                    result['failed'].append({'id': action_id, 'error': 'Invalid attendance payload'})
                    continue

                denied = [pid for pid in participant_ids if not can_access_participant(pid)]
                if denied:
                    result['failed'].append({'id': action_id, 'error': f"No access to participants {denied}"})
                    continue

                for participant_id in participant_ids:
                    result['pointUpdates'].append(
                        mark_attendance(self.conn, self.organization_id, participant_id, status, date, rules)
                    )
                self.conn.execute(
                    """INSERT INTO offline_sync_actions (client_action_id, organization_id, user_id, action_type)
                       VALUES (?, ?, ?, ?)""",
                    (action_id, self.organization_id, user_id, action_type)
                )
                result['applied'].append(action_id)

            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise

        logger.info(f"[OFFLINE] Outbox replay for org {self.organization_id}: "
                    f"{len(result['applied'])} applied, {len(result['skipped'])} skipped, "
                    f"{len(result['failed'])} failed")
        return result
