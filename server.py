# =================================================================
#   Scout Troop Manager Server
# =================================================================

from flask import Flask, jsonify, request, send_file
import sqlite3
import datetime
import json
import jwt
import hashlib
import secrets
import bcrypt
import html as html_module
import traceback
from functools import wraps

from openpyxl import Workbook
from openpyxl.styles import Font, Alignment, PatternFill
import io

import logging
from logging.handlers import RotatingFileHandler
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_cors import CORS

import sys
import os
import time

import analytics
import announcements
import email_service
import push_service
import two_factor
from attendance import VALID_STATUSES, mark_attendance, carry_forward
from badges import (BadgeLevelError, determine_next_level, get_level_count, normalize_levels,
                    normalize_star_type, section_matches)
from database_setup import create_schema, seed_roles, seed_default_organization, create_user
from org_settings import (SHARED_ORGANIZATION_ID, get_all_settings, get_meeting_section_config, get_setting,
                          set_setting)
from permissions import (OrganizationNotFoundError, get_current_organization_id, get_role_ids,
                         get_role_names, get_user_data_scope, is_demo_user, resolve_organization_id,
                         user_has_access_to_participant, verify_organization_membership)
from points import (add_points, get_participant_group_id, get_point_system_rules, group_total,
                    participant_total)
from roles import ROLE_BUNDLES
from sisc_import import ImportValidationError, SiscImporter
from sync_engine import OfflineRangeError, OfflineSyncEngine

# Fix console encoding for Windows to support emoji/unicode
if sys.platform == "win32":
    os.environ['PYTHONIOENCODING'] = 'utf-8'
    if hasattr(sys.stdout, 'reconfigure'):
        sys.stdout.reconfigure(encoding='utf-8')
    if hasattr(sys.stderr, 'reconfigure'):
        sys.stderr.reconfigure(encoding='utf-8')


class UTF8StreamHandler(logging.StreamHandler):
    """Custom handler that forces UTF-8 encoding for accented names in log lines"""
    def emit(self, record):
        try:
            msg = self.format(record)
            if sys.platform == "win32":
                sys.stderr.write(msg.encode('utf-8', errors='replace').decode('utf-8'))
            else:
                self.stream.write(msg)
            self.stream.write(self.terminator)
            self.flush()
        except Exception:
            self.handleError(record)


from config import Config


# ------------------- Request logging ----------------------
from werkzeug.serving import WSGIRequestHandler


class TimedRequestHandler(WSGIRequestHandler):
    """Custom request handler that only logs slow or failed requests"""
    def handle_one_request(self):
        self._start_time = time.time()
        super().handle_one_request()

    def log_request(self, code='-', size='-'):
        if hasattr(self, '_start_time'):
            duration = time.time() - self._start_time
            if duration > 1.0 or int(code) >= 400:
                self.log('info', f'"{self.requestline}" {code} {size} ({duration:.2f}s)')


# --- Configure logging with rotation ---
log_file_handler = RotatingFileHandler(
    'scout_server.log',
    maxBytes=10 * 1024 * 1024,  # 10 MB per file
    backupCount=5,
    encoding='utf-8'
)
log_file_handler.setLevel(logging.INFO)
log_formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')
log_file_handler.setFormatter(log_formatter)

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s',
    handlers=[
        log_file_handler,
        UTF8StreamHandler()
    ]
)

logger = logging.getLogger(__name__)

# Reduce werkzeug (Flask web server) logging - only show warnings and errors
logging.getLogger('werkzeug').setLevel(logging.WARNING)

# Reduce APScheduler logging - only show warnings and errors
logging.getLogger('apscheduler').setLevel(logging.WARNING)
logging.getLogger('apscheduler.executors.default').setLevel(logging.ERROR)
logging.getLogger('apscheduler.scheduler').setLevel(logging.WARNING)


# --- App Initialization ---
app = Flask(__name__)
app.config['SECRET_KEY'] = Config.SECRET_KEY
app.config['DEBUG'] = Config.DEBUG
app.config['TESTING'] = Config.TESTING
app.config['DATABASE_PATH'] = Config.DATABASE_PATH
app.config['RATELIMIT_ENABLED'] = not Config.TESTING

# --- CORS: the SPA may be served from another origin ---
CORS(app, resources={r"/api/*": {"origins": "*"}})

# --- Rate Limiting: Protect against brute-force attacks ---
limiter = Limiter(
    key_func=get_remote_address,
    app=app,
    default_limits=[Config.RATE_LIMIT_API],
    storage_uri="memory://"
)

# Set by initialize(); None while the scheduler is disabled (tests, one-off scripts)
announcement_scheduler = None


# --- Security Headers Middleware ---
@app.after_request
def add_security_headers(response):
    """Add security headers to every response."""
    response.headers['X-Content-Type-Options'] = 'nosniff'
    response.headers['X-Frame-Options'] = 'SAMEORIGIN'
    response.headers['X-XSS-Protection'] = '1; mode=block'
    response.headers['Referrer-Policy'] = 'strict-origin-when-cross-origin'
    if not Config.DEBUG:
        response.headers['Strict-Transport-Security'] = 'max-age=31536000; includeSubDomains'
    return response


# --- Input Sanitization Helper ---
def sanitize_input(value):
    """Escape markup in user text so it can be rendered by the SPA as-is."""
    if value is None:
        return None
    if isinstance(value, str):
        return html_module.escape(value.strip(), quote=False)
    return value


# --- Password Hashing Helpers (bcrypt) ---
def hash_password(password):
    return bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt()).decode('utf-8')


def verify_password(password, hashed):
    """
    Verify a password against a stored hash.
    Accepts bcrypt ($2a$/$2b$), PHP bcrypt ($2y$) and legacy SHA-256 hashes.
    Accounts created by an import have an empty hash and cannot log in.
    """
    if not hashed or not password:
        return False
    try:
        if hashed.startswith('$2y$'):
            hashed = '$2b$' + hashed[4:]
        if hashed.startswith('$2b$') or hashed.startswith('$2a$'):
            return bcrypt.checkpw(password.encode('utf-8'), hashed.encode('utf-8'))
        sha256_hash = hashlib.sha256(password.encode('utf-8')).hexdigest()
        return secrets.compare_digest(sha256_hash, hashed)
    except ValueError:
        return False


# --- Request/Response Logging Middleware ---
SKIP_LOG_PATHS = ['/api/health']


@app.before_request
def log_request_info():
    """Log every incoming request with method, path, and client IP."""
    if request.path in SKIP_LOG_PATHS:
        return
    request._start_time = time.time()
    logger.info(f"[REQUEST] {request.method} {request.path} - Client: {request.remote_addr}")


@app.after_request
def log_response_info(response):
    """Log non-200 or slow responses."""
    if request.path in SKIP_LOG_PATHS:
        return response
    duration = 0
    if hasattr(request, '_start_time'):
        duration = (time.time() - request._start_time) * 1000
    if response.status_code != 200 or duration > 500:
        logger.info(f"[RESPONSE] {request.method} {request.path} - Status: {response.status_code} - {duration:.0f}ms")
    return response


# --- Error handlers ---
@app.errorhandler(OrganizationNotFoundError)
def handle_organization_not_found(error):
    logger.warning(f"[ORG] {error}")
    return jsonify({
        "error": "organization_not_found",
        "fallback": "/organization-not-found.html"
    }), 404


@app.errorhandler(429)
def handle_rate_limited(error):
    return jsonify({"error": "Too many requests", "detail": str(error.description)}), 429


@app.errorhandler(405)
def handle_method_not_allowed(error):
    return jsonify({"error": "Method not allowed"}), 405


# --- Database & Token Helper Functions ---

def get_db_connection():
    """Establishes a connection to the SQLite database."""
    # Flask may serve requests on different threads
    conn = sqlite3.connect(app.config['DATABASE_PATH'], check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def token_required(f):
    """Require a valid Bearer JWT; the decoded payload is passed as the first argument."""
    @wraps(f)
    def decorated(*args, **kwargs):
        token = None
        auth_header = request.headers.get('Authorization', '')
        parts = auth_header.split(" ")
        if len(parts) == 2 and parts[0] == 'Bearer':
            token = parts[1]

        if not token:
            return jsonify({'message': 'Authentication required'}), 401

        try:
            data = jwt.decode(token, app.config['SECRET_KEY'], algorithms=["HS256"])
        except jwt.ExpiredSignatureError:
            return jsonify({'message': 'Token has expired'}), 401
        except jwt.InvalidTokenError:
            return jsonify({'message': 'Invalid or expired token'}), 401

        if not data.get('user_id'):
            return jsonify({'message': 'Invalid or expired token'}), 401

        return f(data, *args, **kwargs)
    return decorated


def permission_required(*required_permissions, block_demo=False):
    """
    Resolve the request's organization and check the caller's membership and
    permissions in it. Stack below @token_required. The route receives the
    token payload enriched with organization_id, role, roles, permissions
    and data_scope.
    """
    def decorator(f):
        @wraps(f)
        def decorated(user_data, *args, **kwargs):
            conn = get_db_connection()
            try:
                org_id = resolve_organization_id(
                    conn, user_data.get('organizationId'), request.headers, request.args,
                    request.get_json(silent=True), request.host
                )
                membership = verify_organization_membership(
                    conn, user_data['user_id'], org_id,
                    required_permissions=list(required_permissions) or None
                )
                data_scope = get_user_data_scope(conn, membership['roles'])
            finally:
                conn.close()

            if not membership['authorized']:
                logger.warning(f"[AUTH] Denied {request.method} {request.path} for user {user_data['user_id']} "
                               f"in org {org_id}: {membership['message']}")
                body = {"error": membership['message']}
                if membership['message'] == 'Insufficient permissions':
                    body['required'] = list(required_permissions)
                    body['missing'] = membership.get('missing', [])
                return jsonify(body), 403

            if block_demo and is_demo_user(membership['roles']):
                return jsonify({"error": "Demo accounts cannot modify data", "isDemo": True}), 403

            enriched = dict(user_data)
            enriched.update({
                'organization_id': org_id,
                'role': membership['role'],
                'roles': membership['roles'],
                'permissions': membership['permissions'],
                'data_scope': data_scope,
            })
            return f(enriched, *args, **kwargs)
        return decorated
    return decorator


# --- Input Validation Helpers ---
def validate_required_fields(data, required_fields):
    """
    Validates that request data contains all required fields and they're not empty.

    Returns:
        (is_valid, error_message) tuple
    """
    if not data:
        return False, "No data provided in request body"

    for field in required_fields:
        if field not in data or data[field] is None:
            return False, f"Missing required field: '{field}'"
        if not str(data[field]).strip():
            return False, f"Field '{field}' cannot be empty"

    return True, None


def parse_iso_date(value):
    """'YYYY-MM-DD' string, or None when the value is not a valid date."""
    try:
        return datetime.date.fromisoformat(str(value)[:10]).isoformat()
    except (TypeError, ValueError):
        return None


def int_arg(name, default=None):
    try:
        return int(request.args.get(name, default))
    except (TypeError, ValueError):
        return default


def participant_in_organization(conn, participant_id, organization_id):
    return conn.execute(
        "SELECT 1 FROM participant_organizations WHERE participant_id = ? AND organization_id = ?",
        (participant_id, organization_id)
    ).fetchone() is not None


def connect_for_jobs():
    """Connection factory for background jobs."""
    return get_db_connection()


# =================================================================
#   Health Check
# =================================================================

@app.route('/api/health', methods=['GET'])
@limiter.exempt
def health_check():
    """Server status, database connectivity, and version info."""
    status = {
        "status": "healthy",
        "version": "1.0.0",
        "environment": "production" if not Config.DEBUG else "development",
        "database": "unknown"
    }

    try:
        conn = get_db_connection()
        try:
            conn.execute("SELECT 1").fetchone()
        finally:
            conn.close()
        status["database"] = "connected"
    except sqlite3.Error as e:
        status["status"] = "degraded"
        status["database"] = f"error: {str(e)}"
        logger.error(f"Health check - Database error: {e}")

    http_code = 200 if status["status"] == "healthy" else 503
    return jsonify(status), http_code


# =================================================================
#   AUTHENTICATION
# =================================================================

def _guardian_participants(conn, user_id, organization_id):
    rows = conn.execute(
        """SELECT DISTINCT p.id, p.first_name, p.last_name
           FROM user_participants up
           JOIN participants p ON p.id = up.participant_id
           JOIN participant_organizations po ON po.participant_id = p.id AND po.organization_id = ?
           WHERE up.user_id = ?
           ORDER BY p.first_name""",
        (organization_id, user_id)
    ).fetchall()
    return [dict(row) for row in rows]


def _issue_session(conn, user, organization_id):
    """Build the JWT and login payload for a user authenticated in an organization."""
    membership = verify_organization_membership(conn, user['id'], organization_id)
    role_ids = get_role_ids(conn, membership['roles'])
    token = jwt.encode({
        'user_id': user['id'],
        'user_role': membership['role'],
        'roleIds': role_ids,
        'roleNames': membership['roles'],
        'permissions': membership['permissions'],
        'organizationId': organization_id,
        'exp': datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(days=Config.JWT_EXPIRATION_DAYS)
    }, app.config['SECRET_KEY'], algorithm="HS256")

    return {
        'token': token,
        'user_id': user['id'],
        'user_full_name': user['full_name'],
        'user_role': membership['role'],
        'user_roles': membership['roles'],
        'user_permissions': membership['permissions'],
        'data_scope': get_user_data_scope(conn, membership['roles']),
        'organization_id': organization_id,
        'guardian_participants': _guardian_participants(conn, user['id'], organization_id),
    }


def _find_member(conn, email, organization_id):
    return conn.execute(
        """SELECT u.* FROM users u
           JOIN user_organizations uo ON uo.user_id = u.id
           WHERE u.email = ? AND uo.organization_id = ?""",
        (email, organization_id)
    ).fetchone()


@app.route('/api/auth/login', methods=['POST'])
@limiter.limit(Config.RATE_LIMIT_LOGIN)
def login():
    """Password login; unknown devices must confirm an emailed code."""
    data = request.get_json(silent=True) or {}
    email = (data.get('email') or '').strip().lower()
    password = data.get('password') or ''
    if not email or not password:
        return jsonify({"message": "Email and password are required"}), 400

    conn = get_db_connection()
    try:
        organization_id = get_current_organization_id(conn, request.headers, request.host)
        user = _find_member(conn, email, organization_id)

        if not user or not verify_password(password, user['password']):
            logger.warning(f"[AUTH] Login failed - {email} in org {organization_id}")
            return jsonify({"message": "invalid_email_or_password"}), 401

        if not user['is_verified']:
            logger.warning(f"[AUTH] Login refused, unverified account - {email}")
            return jsonify({"message": "account_not_verified_login"}), 403

        device_token = request.headers.get('X-Device-Token')
        if not two_factor.verify_trusted_device(conn, user['id'], organization_id, device_token):
            code = two_factor.generate_code()
            two_factor.store_code(conn, user['id'], organization_id, code, Config.TWO_FACTOR_CODE_TTL_MINUTES,
                                  request.remote_addr, request.headers.get('User-Agent'))
            sent, error = email_service.send_two_factor_code(user['email'], code, user['full_name'])
            if not sent:
                logger.error(f"[AUTH] Could not send 2FA code to {email}: {error}")
                return jsonify({"message": "two_factor_email_failed"}), 500
            logger.info(f"[AUTH] 2FA code sent - {email}")
            return jsonify({"requires_2fa": True, "user_id": user['id'], "message": "two_factor_code_sent"})

        logger.info(f"[AUTH] Login successful (trusted device) - {email}")
        return jsonify(_issue_session(conn, user, organization_id))
    finally:
        conn.close()


@app.route('/api/auth/verify-2fa', methods=['POST'])
@limiter.limit(Config.RATE_LIMIT_LOGIN)
def verify_two_factor():
    data = request.get_json(silent=True) or {}
    user_id = data.get('user_id')
    code = str(data.get('code') or '').strip()
    if not user_id or len(code) != 6:
        return jsonify({"message": "A user id and a 6-digit code are required"}), 400

    conn = get_db_connection()
    try:
        organization_id = get_current_organization_id(conn, request.headers, request.host)
        user = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        if not user:
            return jsonify({"message": "invalid_or_expired_code"}), 401

        outcome = two_factor.verify_code(conn, user_id, organization_id, code, Config.TWO_FACTOR_MAX_ATTEMPTS)
        if outcome == two_factor.CODE_TOO_MANY_ATTEMPTS:
            return jsonify({"message": "too_many_attempts"}), 429
        if outcome != two_factor.CODE_VALID:
            return jsonify({"message": "invalid_or_expired_code"}), 401

        device_token = two_factor.create_trusted_device(
            conn, user_id, organization_id, request.headers.get('User-Agent'), Config.TRUSTED_DEVICE_DAYS
        )
        session = _issue_session(conn, user, organization_id)
        session['device_token'] = device_token
        logger.info(f"[AUTH] 2FA verified, device trusted - {user['email']}")
        return jsonify(session)
    finally:
        conn.close()


@app.route('/api/auth/register', methods=['POST'])
@limiter.limit(Config.RATE_LIMIT_LOGIN)
def register():
    """Self-registration of a parent account; an administrator verifies it later."""
    data = request.get_json(silent=True)
    valid, error = validate_required_fields(data, ['email', 'password', 'full_name'])
    if not valid:
        return jsonify({"error": error}), 400
    if len(data['password']) < 8:
        return jsonify({"error": "Password must be at least 8 characters"}), 400

    email = data['email'].strip().lower()
    if '@' not in email:
        return jsonify({"error": "Invalid email address"}), 400

    conn = get_db_connection()
    try:
        organization_id = get_current_organization_id(conn, request.headers, request.host)
        try:
            user_id = create_user(conn, email, data['password'], sanitize_input(data['full_name']),
                                  organization_id, ['parent'], is_verified=False)
        except sqlite3.IntegrityError:
            conn.rollback()
            return jsonify({"error": "An account with this email already exists"}), 409
    finally:
        conn.close()

    logger.info(f"[AUTH] Registered {email} in org {organization_id}")
    return jsonify({"status": "success", "message": "Account created, awaiting verification.", "user_id": user_id}), 201


@app.route('/api/auth/request-reset', methods=['POST'])
@limiter.limit(Config.RATE_LIMIT_LOGIN)
def request_password_reset():
    data = request.get_json(silent=True) or {}
    email = (data.get('email') or '').strip().lower()
    if not email:
        return jsonify({"error": "Email is required"}), 400

    conn = get_db_connection()
    try:
        user = conn.execute("SELECT id, email FROM users WHERE email = ?", (email,)).fetchone()
        if user:
            reset_token = secrets.token_urlsafe(32)
            expiry = two_factor.db_timestamp(
                datetime.datetime.now(datetime.timezone.utc)
                + datetime.timedelta(minutes=Config.PASSWORD_RESET_TTL_MINUTES)
            )
            conn.execute("UPDATE users SET reset_token = ?, reset_token_expiry = ? WHERE id = ?",
                         (two_factor.hash_token(reset_token), expiry, user['id']))
            conn.commit()
            email_service.send_password_reset(user['email'], reset_token)
            logger.info(f"[AUTH] Password reset requested - {email}")
    finally:
        conn.close()

    # Same answer whether or not the account exists
    return jsonify({"status": "success", "message": "If the account exists, a reset link has been sent."})


@app.route('/api/auth/reset-password', methods=['POST'])
@limiter.limit(Config.RATE_LIMIT_LOGIN)
def reset_password():
    data = request.get_json(silent=True)
    valid, error = validate_required_fields(data, ['token', 'new_password'])
    if not valid:
        return jsonify({"error": error}), 400
    if len(data['new_password']) < 8:
        return jsonify({"error": "Password must be at least 8 characters"}), 400

    conn = get_db_connection()
    try:
        user = conn.execute(
            "SELECT id FROM users WHERE reset_token = ? AND reset_token_expiry > ?",
            (two_factor.hash_token(data['token']), two_factor.db_timestamp())
        ).fetchone()
        if not user:
            return jsonify({"error": "Invalid or expired reset token"}), 400

        conn.execute(
            "UPDATE users SET password = ?, reset_token = NULL, reset_token_expiry = NULL WHERE id = ?",
            (hash_password(data['new_password']), user['id'])
        )
        conn.commit()
    finally:
        conn.close()

    logger.info(f"[AUTH] Password reset completed for user {user['id']}")
    return jsonify({"status": "success", "message": "Password updated."})


@app.route('/api/auth/verify-session', methods=['GET'])
@token_required
def verify_session(user_data):
    return jsonify({"valid": True, "user": user_data})


@app.route('/api/auth/logout', methods=['POST'])
@token_required
def logout(user_data):
    logger.info(f"[AUTH] Logout - user {user_data['user_id']}")
    return jsonify({"status": "success", "message": "Logged out."})


@app.route('/api/auth/trusted-devices', methods=['DELETE'])
@token_required
@permission_required()
def revoke_devices(user_data):
    conn = get_db_connection()
    try:
        revoked = two_factor.revoke_trusted_devices(conn, user_data['user_id'], user_data['organization_id'])
    finally:
        conn.close()
    return jsonify({"status": "success", "revoked": revoked})


# =================================================================
#   ORGANIZATION SETTINGS & USERS
# =================================================================

@app.route('/api/organization-settings', methods=['GET'])
@token_required
@permission_required()
def get_organization_settings(user_data):
    conn = get_db_connection()
    try:
        settings = get_all_settings(conn, user_data['organization_id'])
    finally:
        conn.close()
    return jsonify({"organization_id": user_data['organization_id'], "settings": settings})


@app.route('/api/organization-settings/<string:setting_key>', methods=['PUT'])
@token_required
@permission_required('org.edit', block_demo=True)
def update_organization_setting(user_data, setting_key):
    data = request.get_json(silent=True)
    if not data or 'value' not in data:
        return jsonify({"error": "Missing required field: 'value'"}), 400

    conn = get_db_connection()
    try:
        set_setting(conn, user_data['organization_id'], setting_key, data['value'])
        conn.commit()
    finally:
        conn.close()
    logger.info(f"Setting '{setting_key}' updated for org {user_data['organization_id']}")
    return jsonify({"status": "success", "message": "Setting saved."})


@app.route('/api/users', methods=['GET'])
@token_required
@permission_required('users.view')
def get_users(user_data):
    conn = get_db_connection()
    try:
        rows = conn.execute(
            """SELECT u.id, u.email, u.full_name, u.is_verified, u.whatsapp_phone_number, uo.role_ids
               FROM users u
               JOIN user_organizations uo ON uo.user_id = u.id
               WHERE uo.organization_id = ?
               ORDER BY u.full_name""",
            (user_data['organization_id'],)
        ).fetchall()

        users = []
        for row in rows:
            user = dict(row)
            user['roles'] = get_role_names(conn, json.loads(user.pop('role_ids') or '[]'))
            user['is_verified'] = bool(user['is_verified'])
            users.append(user)
    finally:
        conn.close()
    return jsonify(users)


@app.route('/api/users/<string:target_user_id>/roles', methods=['PUT'])
@token_required
@permission_required('roles.manage', block_demo=True)
def update_user_roles(user_data, target_user_id):
    data = request.get_json(silent=True) or {}
    role_names = data.get('roles')
    if not isinstance(role_names, list) or not role_names:
        return jsonify({"error": "roles must be a non-empty list"}), 400

    unknown = [name for name in role_names if name not in ROLE_BUNDLES]
    if unknown:
        return jsonify({"error": f"Unknown roles: {', '.join(unknown)}"}), 400

    if 'district' in role_names and 'users.assign_district' not in user_data['permissions']:
        return jsonify({"error": "Insufficient permissions", "required": ["users.assign_district"],
                        "missing": ["users.assign_district"]}), 403

    conn = get_db_connection()
    try:
        role_ids = get_role_ids(conn, role_names)
        cursor = conn.execute(
            "UPDATE user_organizations SET role_ids = ? WHERE user_id = ? AND organization_id = ?",
            (json.dumps(role_ids), target_user_id, user_data['organization_id'])
        )
        if cursor.rowcount == 0:
            return jsonify({"error": "User not found"}), 404
        conn.commit()
    finally:
        conn.close()

    logger.info(f"[AUTH] Roles of user {target_user_id} set to {role_names} by {user_data['user_id']}")
    return jsonify({"status": "success", "message": "Roles updated.", "roles": role_names})


@app.route('/api/users/<string:target_user_id>/verify', methods=['POST'])
@token_required
@permission_required('users.edit', block_demo=True)
def verify_user(user_data, target_user_id):
    conn = get_db_connection()
    try:
        cursor = conn.execute(
            """UPDATE users SET is_verified = 1
               WHERE id = ? AND id IN (SELECT user_id FROM user_organizations WHERE organization_id = ?)""",
            (target_user_id, user_data['organization_id'])
        )
        if cursor.rowcount == 0:
            return jsonify({"error": "User not found"}), 404
        conn.commit()
    finally:
        conn.close()
    return jsonify({"status": "success", "message": "User verified."})


@app.route('/api/link-participants', methods=['POST'])
@token_required
@permission_required('participants.edit', block_demo=True)
def link_participants(user_data):
    data = request.get_json(silent=True)
    valid, error = validate_required_fields(data, ['user_id', 'participant_ids'])
    if not valid:
        return jsonify({"error": error}), 400
    if not isinstance(data['participant_ids'], list):
        return jsonify({"error": "participant_ids must be a list"}), 400

    org_id = user_data['organization_id']
    conn = get_db_connection()
    try:
        member = conn.execute(
            "SELECT 1 FROM user_organizations WHERE user_id = ? AND organization_id = ?",
            (data['user_id'], org_id)
        ).fetchone()
        if not member:
            return jsonify({"error": "User not found"}), 404

        linked = 0
        for participant_id in data['participant_ids']:
            if not participant_in_organization(conn, participant_id, org_id):
                continue
            cursor = conn.execute(
                "INSERT OR IGNORE INTO user_participants (user_id, participant_id) VALUES (?, ?)",
                (data['user_id'], participant_id)
            )
            linked += cursor.rowcount
        conn.commit()
    finally:
        conn.close()

    return jsonify({"status": "success", "message": f"{linked} participant(s) linked.", "linked": linked})


# =================================================================
#   GROUPS
# =================================================================

@app.route('/api/groups', methods=['GET'])
@token_required
@permission_required('groups.view')
def get_groups(user_data):
    conn = get_db_connection()
    try:
        rows = conn.execute(
            """SELECT g.id, g.name, g.section,
                      (SELECT COUNT(*) FROM participant_groups pg
                         WHERE pg.group_id = g.id AND pg.organization_id = g.organization_id) AS member_count,
                      (SELECT COALESCE(SUM(p.value), 0) FROM points p
                         WHERE p.group_id = g.id AND p.organization_id = g.organization_id
                           AND p.participant_id IS NULL) AS total_points
               FROM scout_groups g
               WHERE g.organization_id = ?
               ORDER BY g.name""",
            (user_data['organization_id'],)
        ).fetchall()
    finally:
        conn.close()
    return jsonify([dict(row) for row in rows])


@app.route('/api/groups', methods=['POST'])
@token_required
@permission_required('groups.create', block_demo=True)
def create_group(user_data):
    data = request.get_json(silent=True)
    valid, error = validate_required_fields(data, ['name'])
    if not valid:
        return jsonify({"error": error}), 400

    conn = get_db_connection()
    try:
        cursor = conn.execute(
            "INSERT INTO scout_groups (organization_id, name, section) VALUES (?, ?, ?)",
            (user_data['organization_id'], sanitize_input(data['name']), sanitize_input(data.get('section')))
        )
        conn.commit()
        group_id = cursor.lastrowid
    finally:
        conn.close()
    return jsonify({"status": "success", "message": "Group created.", "id": group_id}), 201


@app.route('/api/groups/<int:group_id>', methods=['PUT'])
@token_required
@permission_required('groups.edit', block_demo=True)
def update_group(user_data, group_id):
    data = request.get_json(silent=True) or {}
    conn = get_db_connection()
    try:
        cursor = conn.execute(
            """UPDATE scout_groups SET name = COALESCE(?, name), section = COALESCE(?, section)
               WHERE id = ? AND organization_id = ?""",
            (sanitize_input(data.get('name')) or None, sanitize_input(data.get('section')),
             group_id, user_data['organization_id'])
        )
        if cursor.rowcount == 0:
            return jsonify({"error": "Group not found"}), 404
        conn.commit()
    finally:
        conn.close()
    return jsonify({"status": "success", "message": "Group updated."})


@app.route('/api/groups/<int:group_id>', methods=['DELETE'])
@token_required
@permission_required('groups.delete', block_demo=True)
def delete_group(user_data, group_id):
    conn = get_db_connection()
    try:
        cursor = conn.execute(
            "DELETE FROM scout_groups WHERE id = ? AND organization_id = ?",
            (group_id, user_data['organization_id'])
        )
        if cursor.rowcount == 0:
            return jsonify({"error": "Group not found"}), 404
        conn.commit()
    finally:
        conn.close()
    return jsonify({"status": "success", "message": "Group deleted."})


# =================================================================
#   PARTICIPANTS
# =================================================================

PARTICIPANT_SELECT = """
    SELECT p.id, p.first_name, p.last_name, p.date_naissance,
           pg.group_id, g.name AS group_name, g.section,
           pg.first_leader, pg.second_leader,
           (SELECT COALESCE(SUM(pt.value), 0) FROM points pt
              WHERE pt.participant_id = p.id AND pt.organization_id = po.organization_id) AS total_points
    FROM participants p
    JOIN participant_organizations po ON po.participant_id = p.id
    LEFT JOIN participant_groups pg ON pg.participant_id = p.id AND pg.organization_id = po.organization_id
    LEFT JOIN scout_groups g ON g.id = pg.group_id
"""


def _attach_form_flags(conn, organization_id, participants):
    """Add a has_<form_type> flag per form type submitted in the organization."""
    form_types = [row['form_type'] for row in conn.execute(
        "SELECT DISTINCT form_type FROM form_submissions WHERE organization_id = ?", (organization_id,)
    ).fetchall()]
    if not participants:
        return participants

    ids = [p['id'] for p in participants]
    submitted = set()
    for row in conn.execute(
        f"""SELECT participant_id, form_type FROM form_submissions
            WHERE organization_id = ? AND participant_id IN ({','.join('?' * len(ids))})""",
        [organization_id] + ids
    ).fetchall():
        submitted.add((row['participant_id'], row['form_type']))

    for participant in participants:
        for form_type in form_types:
            participant[f"has_{form_type}"] = (participant['id'], form_type) in submitted
    return participants


@app.route('/api/participants', methods=['GET'])
@token_required
@permission_required('participants.view')
def get_participants(user_data):
    org_id = user_data['organization_id']
    page = max(int_arg('page', 1), 1)
    limit = int_arg('limit', Config.PAGINATION_DEFAULT_LIMIT)
    limit = min(max(limit, 1), Config.PAGINATION_MAX_LIMIT)
    group_id = int_arg('group_id')

    where = ["po.organization_id = ?"]
    params = [org_id]
    if user_data['data_scope'] != 'organization':
        where.append("p.id IN (SELECT participant_id FROM user_participants WHERE user_id = ?)")
        params.append(user_data['user_id'])
    if group_id:
        where.append("pg.group_id = ?")
        params.append(group_id)
    where_sql = " WHERE " + " AND ".join(where)

    conn = get_db_connection()
    try:
        total = conn.execute(
            f"""SELECT COUNT(*) FROM participants p
                JOIN participant_organizations po ON po.participant_id = p.id
                LEFT JOIN participant_groups pg ON pg.participant_id = p.id AND pg.organization_id = po.organization_id
                {where_sql}""",
            params
        ).fetchone()[0]

        rows = conn.execute(
            PARTICIPANT_SELECT + where_sql + " ORDER BY p.first_name, p.last_name LIMIT ? OFFSET ?",
            params + [limit, (page - 1) * limit]
        ).fetchall()
        participants = _attach_form_flags(conn, org_id, [dict(row) for row in rows])
    finally:
        conn.close()

    return jsonify({
        "participants": participants,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "totalPages": (total + limit - 1) // limit,
        }
    })


def _guardians_for(conn, participant_id):
    rows = conn.execute(
        """SELECT g.id, g.nom, g.prenom, g.courriel, g.telephone_residence, g.telephone_travail,
                  g.telephone_cellulaire, g.is_primary, g.is_emergency_contact, pg.lien
           FROM parents_guardians g
           JOIN participant_guardians pg ON pg.guardian_id = g.id
           WHERE pg.participant_id = ?
           ORDER BY g.is_primary DESC, g.nom""",
        (participant_id,)
    ).fetchall()
    guardians = []
    for row in rows:
        guardian = dict(row)
        guardian['is_primary'] = bool(guardian['is_primary'])
        guardian['is_emergency_contact'] = bool(guardian['is_emergency_contact'])
        guardians.append(guardian)
    return guardians


@app.route('/api/participants/<int:participant_id>', methods=['GET'])
@token_required
@permission_required('participants.view')
def get_participant(user_data, participant_id):
    org_id = user_data['organization_id']
    conn = get_db_connection()
    try:
        if not user_has_access_to_participant(conn, user_data['user_id'], participant_id, org_id,
                                              user_data['data_scope']):
            return jsonify({"error": "Participant not found"}), 404

        row = conn.execute(PARTICIPANT_SELECT + " WHERE po.organization_id = ? AND p.id = ?",
                           (org_id, participant_id)).fetchone()
        participant = _attach_form_flags(conn, org_id, [dict(row)])[0]
        participant['guardians'] = _guardians_for(conn, participant_id)
    finally:
        conn.close()
    return jsonify(participant)


@app.route('/api/participants', methods=['POST'])
@token_required
@permission_required('participants.create', block_demo=True)
def create_participant(user_data):
    data = request.get_json(silent=True)
    valid, error = validate_required_fields(data, ['first_name', 'last_name'])
    if not valid:
        return jsonify({"error": error}), 400

    birth_date = data.get('date_naissance')
    if birth_date and not parse_iso_date(birth_date):
        return jsonify({"error": "Invalid date_naissance"}), 400

    org_id = user_data['organization_id']
    group_id = data.get('group_id')
    conn = get_db_connection()
    try:
        if group_id and not conn.execute("SELECT 1 FROM scout_groups WHERE id = ? AND organization_id = ?",
                                         (group_id, org_id)).fetchone():
            return jsonify({"error": "Group not found"}), 400

        cursor = conn.execute(
            "INSERT INTO participants (first_name, last_name, date_naissance) VALUES (?, ?, ?)",
            (sanitize_input(data['first_name']), sanitize_input(data['last_name']),
             parse_iso_date(birth_date) if birth_date else None)
        )
        participant_id = cursor.lastrowid
        conn.execute("INSERT INTO participant_organizations (participant_id, organization_id) VALUES (?, ?)",
                     (participant_id, org_id))
        if group_id:
            conn.execute(
                """INSERT INTO participant_groups (participant_id, group_id, organization_id, first_leader, second_leader)
                   VALUES (?, ?, ?, ?, ?)""",
                (participant_id, group_id, org_id, 1 if data.get('first_leader') else 0,
                 1 if data.get('second_leader') else 0)
            )
        conn.commit()
    except sqlite3.Error as e:
        conn.rollback()
        logger.error(f"Error creating participant: {e}\n{traceback.format_exc()}")
        return jsonify({"error": "Internal Server Error"}), 500
    finally:
        conn.close()

    logger.info(f"Participant {participant_id} created in org {org_id}")
    return jsonify({"status": "success", "message": "Participant created.", "id": participant_id}), 201


@app.route('/api/participants/<int:participant_id>', methods=['PUT'])
@token_required
@permission_required('participants.edit', block_demo=True)
def update_participant(user_data, participant_id):
    data = request.get_json(silent=True) or {}
    org_id = user_data['organization_id']

    birth_date = data.get('date_naissance')
    if birth_date and not parse_iso_date(birth_date):
        return jsonify({"error": "Invalid date_naissance"}), 400

    conn = get_db_connection()
    try:
        if not participant_in_organization(conn, participant_id, org_id):
            return jsonify({"error": "Participant not found"}), 404

        conn.execute(
            """UPDATE participants SET
                 first_name = COALESCE(?, first_name),
                 last_name = COALESCE(?, last_name),
                 date_naissance = COALESCE(?, date_naissance)
               WHERE id = ?""",
            (sanitize_input(data.get('first_name')) or None, sanitize_input(data.get('last_name')) or None,
             parse_iso_date(birth_date) if birth_date else None, participant_id)
        )

        if 'group_id' in data:
            group_id = data['group_id']
            conn.execute("DELETE FROM participant_groups WHERE participant_id = ? AND organization_id = ?",
                         (participant_id, org_id))
            if group_id:
                if not conn.execute("SELECT 1 FROM scout_groups WHERE id = ? AND organization_id = ?",
                                    (group_id, org_id)).fetchone():
                    conn.rollback()
                    return jsonify({"error": "Group not found"}), 400
                conn.execute(
                    """INSERT INTO participant_groups
                       (participant_id, group_id, organization_id, first_leader, second_leader)
                       VALUES (?, ?, ?, ?, ?)""",
                    (participant_id, group_id, org_id, 1 if data.get('first_leader') else 0,
                     1 if data.get('second_leader') else 0)
                )
        conn.commit()
    finally:
        conn.close()

    return jsonify({"status": "success", "message": "Participant updated."})


@app.route('/api/participants/<int:participant_id>', methods=['DELETE'])
@token_required
@permission_required('participants.delete', block_demo=True)
def remove_participant(user_data, participant_id):
    org_id = user_data['organization_id']
    conn = get_db_connection()
    try:
        cursor = conn.execute(
            "DELETE FROM participant_organizations WHERE participant_id = ? AND organization_id = ?",
            (participant_id, org_id)
        )
        if cursor.rowcount == 0:
            return jsonify({"error": "Participant not found"}), 404
        conn.execute("DELETE FROM participant_groups WHERE participant_id = ? AND organization_id = ?",
                     (participant_id, org_id))
        conn.commit()
    finally:
        conn.close()

    logger.info(f"Participant {participant_id} removed from org {org_id}")
    return jsonify({"status": "success", "message": "Participant removed from organization."})


# =================================================================
#   GUARDIANS
# =================================================================

GUARDIAN_FIELDS = ['nom', 'prenom', 'courriel', 'telephone_residence', 'telephone_travail',
                   'telephone_cellulaire', 'is_primary', 'is_emergency_contact']


@app.route('/api/guardians', methods=['GET'])
@token_required
@permission_required('participants.view')
def get_guardians(user_data):
    participant_id = int_arg('participant_id')
    if not participant_id:
        return jsonify({"error": "participant_id is required"}), 400

    conn = get_db_connection()
    try:
        if not user_has_access_to_participant(conn, user_data['user_id'], participant_id,
                                              user_data['organization_id'], user_data['data_scope']):
            return jsonify({"error": "Participant not found"}), 404
        guardians = _guardians_for(conn, participant_id)
    finally:
        conn.close()
    return jsonify(guardians)


@app.route('/api/save-guardian', methods=['POST'])
@token_required
@permission_required('participants.edit', block_demo=True)
def save_guardian(user_data):
    data = request.get_json(silent=True)
    valid, error = validate_required_fields(data, ['participant_id', 'nom', 'prenom'])
    if not valid:
        return jsonify({"error": error}), 400

    org_id = user_data['organization_id']
    participant_id = data['participant_id']
    values = {
        'nom': sanitize_input(data['nom']),
        'prenom': sanitize_input(data['prenom']),
        'courriel': (data.get('courriel') or '').strip().lower() or None,
        'telephone_residence': sanitize_input(data.get('telephone_residence')),
        'telephone_travail': sanitize_input(data.get('telephone_travail')),
        'telephone_cellulaire': sanitize_input(data.get('telephone_cellulaire')),
        'is_primary': 1 if data.get('is_primary') else 0,
        'is_emergency_contact': 1 if data.get('is_emergency_contact') else 0,
    }

    conn = get_db_connection()
    try:
        if not participant_in_organization(conn, participant_id, org_id):
            return jsonify({"error": "Participant not found"}), 404

        guardian_id = data.get('guardian_id')
        if guardian_id:
            owned = conn.execute(
                """SELECT 1 FROM participant_guardians pg
                   JOIN participant_organizations po ON po.participant_id = pg.participant_id
                   WHERE pg.guardian_id = ? AND po.organization_id = ?""",
                (guardian_id, org_id)
            ).fetchone()
            if not owned:
                return jsonify({"error": "Guardian does not belong to this organization"}), 403
            conn.execute(
                f"UPDATE parents_guardians SET {', '.join(f'{field} = ?' for field in GUARDIAN_FIELDS)} WHERE id = ?",
                [values[field] for field in GUARDIAN_FIELDS] + [guardian_id]
            )
        else:
            cursor = conn.execute(
                f"INSERT INTO parents_guardians ({', '.join(GUARDIAN_FIELDS)}) "
                f"VALUES ({', '.join('?' * len(GUARDIAN_FIELDS))})",
                [values[field] for field in GUARDIAN_FIELDS]
            )
            guardian_id = cursor.lastrowid

        conn.execute(
            """INSERT INTO participant_guardians (participant_id, guardian_id, lien) VALUES (?, ?, ?)
               ON CONFLICT (participant_id, guardian_id) DO UPDATE SET lien = excluded.lien""",
            (participant_id, guardian_id, sanitize_input(data.get('lien')))
        )
        conn.commit()
    finally:
        conn.close()

    return jsonify({"status": "success", "message": "Guardian saved.", "guardian_id": guardian_id})


@app.route('/api/remove-guardian', methods=['POST'])
@token_required
@permission_required('participants.edit', block_demo=True)
def remove_guardian(user_data):
    data = request.get_json(silent=True)
    valid, error = validate_required_fields(data, ['participant_id', 'guardian_id'])
    if not valid:
        return jsonify({"error": error}), 400

    conn = get_db_connection()
    try:
        if not participant_in_organization(conn, data['participant_id'], user_data['organization_id']):
            return jsonify({"error": "Participant not found"}), 404

        cursor = conn.execute(
            "DELETE FROM participant_guardians WHERE participant_id = ? AND guardian_id = ?",
            (data['participant_id'], data['guardian_id'])
        )
        if cursor.rowcount == 0:
            return jsonify({"error": "Guardian link not found"}), 404

        remaining = conn.execute("SELECT COUNT(*) FROM participant_guardians WHERE guardian_id = ?",
                                 (data['guardian_id'],)).fetchone()[0]
        if remaining == 0:
            conn.execute("DELETE FROM parents_guardians WHERE id = ?", (data['guardian_id'],))
        conn.commit()
    finally:
        conn.close()

    return jsonify({"status": "success", "message": "Guardian removed."})


# =================================================================
#   POINTS & HONORS
# =================================================================

def _present_on(conn, organization_id, date):
    """Participant ids marked present or late on a date, or None when no attendance was taken."""
    rows = conn.execute(
        "SELECT participant_id, status FROM attendance WHERE organization_id = ? AND date = ?",
        (organization_id, date)
    ).fetchall()
    if not rows:
        return None
    return {row['participant_id'] for row in rows if row['status'] in ('present', 'late')}


@app.route('/api/update-points', methods=['POST'])
@token_required
@permission_required('points.manage', block_demo=True)
def update_points(user_data):
    """Apply a batch of point changes to groups and participants in one transaction."""
    updates = request.get_json(silent=True)
    if not isinstance(updates, list) or not updates:
        return jsonify({"error": "Expected a non-empty list of point updates"}), 400
    if not all(isinstance(update, dict) for update in updates):
        return jsonify({"error": "Each point update must be an object"}), 400

    org_id = user_data['organization_id']
    results = []
    conn = get_db_connection()
    try:
        for update in updates:
            kind = update.get('type')
            target_id = update.get('id')
            try:
                value = int(update.get('points'))
            except (TypeError, ValueError):
                conn.rollback()
                return jsonify({"error": f"Invalid points value for {kind} {target_id}"}), 400

            if kind == 'group':
                group = conn.execute("SELECT id FROM scout_groups WHERE id = ? AND organization_id = ?",
                                     (target_id, org_id)).fetchone()
                if not group:
                    conn.rollback()
                    return jsonify({"error": f"Group {target_id} not found"}), 404

                present = None
                date = parse_iso_date(update.get('date')) if update.get('date') else None
                if date:
                    present = _present_on(conn, org_id, date)

                add_points(conn, org_id, value, group_id=target_id)
                members = [row['participant_id'] for row in conn.execute(
                    "SELECT participant_id FROM participant_groups WHERE group_id = ? AND organization_id = ?",
                    (target_id, org_id)
                ).fetchall()]
                awarded, skipped = [], []
                for member_id in members:
                    if present is not None and member_id not in present:
                        skipped.append(member_id)
                        continue
                    add_points(conn, org_id, value, participant_id=member_id, group_id=target_id)
                    awarded.append(member_id)

                results.append({
                    "type": "group",
                    "id": target_id,
                    "totalPoints": group_total(conn, org_id, target_id),
                    "memberIds": awarded,
                    "skippedMemberIds": skipped,
                    "memberTotals": {str(pid): participant_total(conn, org_id, pid) for pid in awarded},
                })

            elif kind == 'participant':
                if not participant_in_organization(conn, target_id, org_id):
                    conn.rollback()
                    return jsonify({"error": f"Participant {target_id} not found"}), 404
                group_id = get_participant_group_id(conn, target_id, org_id)
                add_points(conn, org_id, value, participant_id=target_id, group_id=group_id)
                results.append({
                    "type": "participant",
                    "id": target_id,
                    "totalPoints": participant_total(conn, org_id, target_id),
                })

            else:
                conn.rollback()
                return jsonify({"error": f"Invalid update type: {kind}"}), 400

        conn.commit()
    except sqlite3.Error as e:
        conn.rollback()
        logger.error(f"Error updating points: {e}\n{traceback.format_exc()}")
        return jsonify({"error": "Internal Server Error"}), 500
    finally:
        conn.close()

    return jsonify({"status": "success", "updates": results})


@app.route('/api/points-leaderboard', methods=['GET'])
@token_required
@permission_required('points.view')
def points_leaderboard(user_data):
    board_type = request.args.get('type', 'participants')
    limit = min(max(int_arg('limit', 10), 1), Config.PAGINATION_MAX_LIMIT)
    org_id = user_data['organization_id']

    conn = get_db_connection()
    try:
        if board_type == 'groups':
            rows = conn.execute(
                """SELECT g.id, g.name,
                          COALESCE(SUM(CASE WHEN p.participant_id IS NULL THEN p.value END), 0) AS total_points
                   FROM scout_groups g
                   LEFT JOIN points p ON p.group_id = g.id AND p.organization_id = g.organization_id
                   WHERE g.organization_id = ?
                   GROUP BY g.id
                   ORDER BY total_points DESC, g.name
                   LIMIT ?""",
                (org_id, limit)
            ).fetchall()
        else:
            rows = conn.execute(
                """SELECT pa.id, pa.first_name, pa.last_name, COALESCE(SUM(p.value), 0) AS total_points
                   FROM participants pa
                   JOIN participant_organizations po ON po.participant_id = pa.id AND po.organization_id = ?
                   LEFT JOIN points p ON p.participant_id = pa.id AND p.organization_id = po.organization_id
                   GROUP BY pa.id
                   ORDER BY total_points DESC, pa.first_name
                   LIMIT ?""",
                (org_id, limit)
            ).fetchall()
    finally:
        conn.close()
    return jsonify({"type": 'groups' if board_type == 'groups' else 'participants',
                    "leaderboard": [dict(row) for row in rows]})


@app.route('/api/honors', methods=['GET'])
@token_required
@permission_required('points.view')
def get_honors(user_data):
    org_id = user_data['organization_id']
    date = parse_iso_date(request.args.get('date')) or datetime.date.today().isoformat()

    conn = get_db_connection()
    try:
        honors = conn.execute(
            """SELECT h.id, h.participant_id, h.date, h.reason, p.first_name, p.last_name
               FROM honors h JOIN participants p ON p.id = h.participant_id
               WHERE h.organization_id = ? AND h.date = ?
               ORDER BY p.first_name""",
            (org_id, date)
        ).fetchall()
        dates = conn.execute(
            "SELECT DISTINCT date FROM honors WHERE organization_id = ? ORDER BY date DESC", (org_id,)
        ).fetchall()
    finally:
        conn.close()

    return jsonify({
        "date": date,
        "honors": [dict(row) for row in honors],
        "availableDates": [row['date'] for row in dates],
    })


@app.route('/api/award-honor', methods=['POST'])
@token_required
@permission_required('points.manage', block_demo=True)
def award_honor(user_data):
    honors = request.get_json(silent=True)
    if isinstance(honors, dict):
        honors = [honors]
    if not isinstance(honors, list) or not honors:
        return jsonify({"error": "Expected a list of honors"}), 400
    if not all(isinstance(honor, dict) for honor in honors):
        return jsonify({"error": "Each honor must be an object"}), 400

    org_id = user_data['organization_id']
    awarded, skipped = [], []
    conn = get_db_connection()
    try:
        rules = get_point_system_rules(conn, org_id)
        honor_points = rules.get('honors', {}).get('award', 0)
        for honor in honors:
            participant_id = honor.get('participantId')
            date = parse_iso_date(honor.get('date'))
            if not participant_id or not date:
                conn.rollback()
                return jsonify({"error": "participantId and a valid date are required"}), 400
            if not participant_in_organization(conn, participant_id, org_id):
                conn.rollback()
                return jsonify({"error": f"Participant {participant_id} not found"}), 404

            cursor = conn.execute(
                "INSERT OR IGNORE INTO honors (participant_id, organization_id, date, reason) VALUES (?, ?, ?, ?)",
                (participant_id, org_id, date, sanitize_input(honor.get('reason')))
            )
            if cursor.rowcount == 0:
                skipped.append({"participantId": participant_id, "date": date})
                continue

            if honor_points:
                add_points(conn, org_id, honor_points, participant_id=participant_id,
                           group_id=get_participant_group_id(conn, participant_id, org_id))
            awarded.append({"participantId": participant_id, "date": date, "points": honor_points,
                            "totalPoints": participant_total(conn, org_id, participant_id)})
        conn.commit()
    finally:
        conn.close()

    return jsonify({"status": "success", "awarded": awarded, "skipped": skipped})


# =================================================================
#   ATTENDANCE
# =================================================================

@app.route('/api/attendance', methods=['GET'])
@token_required
@permission_required('attendance.view')
def get_attendance(user_data):
    where = ["a.organization_id = ?"]
    params = [user_data['organization_id']]
    date = request.args.get('date')
    if date:
        where.append("a.date = ?")
        params.append(parse_iso_date(date))
    participant_id = int_arg('participant_id')
    if participant_id:
        where.append("a.participant_id = ?")
        params.append(participant_id)

    conn = get_db_connection()
    try:
        rows = conn.execute(
            f"""SELECT a.id, a.participant_id, a.date, a.status, a.previous_status, p.first_name, p.last_name
                FROM attendance a JOIN participants p ON p.id = a.participant_id
                WHERE {' AND '.join(where)}
                ORDER BY a.date DESC, p.first_name""",
            params
        ).fetchall()
    finally:
        conn.close()
    return jsonify([dict(row) for row in rows])


@app.route('/api/attendance-dates', methods=['GET'])
@token_required
@permission_required('attendance.view')
def get_attendance_dates(user_data):
    conn = get_db_connection()
    try:
        rows = conn.execute("SELECT DISTINCT date FROM attendance WHERE organization_id = ? ORDER BY date DESC",
                            (user_data['organization_id'],)).fetchall()
    finally:
        conn.close()
    return jsonify([row['date'] for row in rows])


def _validate_attendance_payload(data):
    status = data.get('status')
    if status not in VALID_STATUSES:
        return None, None, f"Invalid status. Must be one of: {', '.join(VALID_STATUSES)}"
    date = parse_iso_date(data.get('date'))
    if not date:
        return None, None, "A valid date is required"
    return status, date, None


@app.route('/api/attendance', methods=['POST'])
@token_required
@permission_required('attendance.manage', block_demo=True)
def save_attendance(user_data):
    data = request.get_json(silent=True) or {}
    participant_id = data.get('participant_id')
    if not participant_id:
        return jsonify({"error": "Missing required field: 'participant_id'"}), 400
    status, date, error = _validate_attendance_payload(data)
    if error:
        return jsonify({"error": error}), 400

    org_id = user_data['organization_id']
    conn = get_db_connection()
    try:
        if not user_has_access_to_participant(conn, user_data['user_id'], participant_id, org_id,
                                              user_data['data_scope']):
            return jsonify({"error": "Participant not found"}), 404
        result = mark_attendance(conn, org_id, participant_id, status, date,
                                 get_point_system_rules(conn, org_id))
        conn.commit()
    finally:
        conn.close()

    return jsonify({"status": "success", "message": "Attendance saved.", "pointUpdate": result})


@app.route('/api/update-attendance', methods=['POST'])
@token_required
@permission_required('attendance.manage', block_demo=True)
def update_attendance(user_data):
    data = request.get_json(silent=True) or {}
    participant_ids = data.get('participant_ids')
    if not isinstance(participant_ids, list) or not participant_ids:
        return jsonify({"error": "participant_ids must be a non-empty list"}), 400
    status, date, error = _validate_attendance_payload(data)
    if error:
        return jsonify({"error": error}), 400

    org_id = user_data['organization_id']
    conn = get_db_connection()
    try:
        denied = [pid for pid in participant_ids
                  if not user_has_access_to_participant(conn, user_data['user_id'], pid, org_id,
                                                        user_data['data_scope'])]
        if denied:
            return jsonify({"error": f"Participants not found: {denied}"}), 404

        rules = get_point_system_rules(conn, org_id)
        point_updates = [mark_attendance(conn, org_id, pid, status, date, rules) for pid in participant_ids]
        conn.commit()
    except sqlite3.Error as e:
        conn.rollback()
        logger.error(f"Error updating attendance: {e}\n{traceback.format_exc()}")
        return jsonify({"error": "Internal Server Error"}), 500
    finally:
        conn.close()

    return jsonify({"status": "success", "message": "Attendance updated.", "pointUpdates": point_updates})


@app.route('/api/attendance/carry-forward', methods=['POST'])
@token_required
@permission_required('attendance.manage', block_demo=True)
def carry_forward_attendance(user_data):
    data = request.get_json(silent=True) or {}
    from_date = parse_iso_date(data.get('from_date'))
    to_date = parse_iso_date(data.get('to_date'))
    if not from_date or not to_date:
        return jsonify({"error": "from_date and to_date are required"}), 400
    if from_date == to_date:
        return jsonify({"error": "from_date and to_date must differ"}), 400

    conn = get_db_connection()
    try:
        count = carry_forward(conn, user_data['organization_id'], from_date, to_date)
        conn.commit()
    finally:
        conn.close()
    return jsonify({"status": "success", "message": f"{count} attendance mark(s) carried forward.", "count": count})


@app.route('/api/attendance', methods=['DELETE'])
@token_required
@permission_required('attendance.manage', block_demo=True)
def delete_attendance_date(user_data):
    date = parse_iso_date(request.args.get('date'))
    if not date:
        return jsonify({"error": "A valid date is required"}), 400

    conn = get_db_connection()
    try:
        cursor = conn.execute("DELETE FROM attendance WHERE organization_id = ? AND date = ?",
                              (user_data['organization_id'], date))
        conn.commit()
    finally:
        conn.close()
    logger.info(f"Deleted {cursor.rowcount} attendance rows for {date} (org {user_data['organization_id']})")
    return jsonify({"status": "success", "message": "Attendance deleted.", "deleted": cursor.rowcount})


# =================================================================
#   BADGES
# =================================================================

def _template_dict(row):
    template = dict(row)
    template['levels'] = normalize_levels(template['levels'], template['level_count'])
    template['level_count'] = get_level_count(row['levels'], row['level_count'])
    return template


@app.route('/api/badge-templates', methods=['GET'])
@token_required
@permission_required()
def get_badge_templates(user_data):
    conn = get_db_connection()
    try:
        rows = conn.execute(
            """SELECT id, organization_id, template_key, name, section, level_count, levels, image
               FROM badge_templates WHERE organization_id IN (?, 0)
               ORDER BY section, name""",
            (user_data['organization_id'],)
        ).fetchall()
    finally:
        conn.close()
    return jsonify([_template_dict(row) for row in rows])


@app.route('/api/save-badge-progress', methods=['POST'])
@token_required
@permission_required(block_demo=True)
def save_badge_progress(user_data):
    data = request.get_json(silent=True)
    valid, error = validate_required_fields(data, ['participant_id', 'badge_template_id'])
    if not valid:
        return jsonify({"error": error}), 400

    org_id = user_data['organization_id']
    participant_id = data['participant_id']
    requested_level = data.get('level')
    if requested_level is not None:
        try:
            requested_level = int(requested_level)
        except (TypeError, ValueError):
            return jsonify({"error": "Invalid level for this badge template"}), 400

    conn = get_db_connection()
    try:
        if not user_has_access_to_participant(conn, user_data['user_id'], participant_id, org_id,
                                              user_data['data_scope']):
            return jsonify({"error": "Participant not found"}), 404

        template = conn.execute(
            "SELECT * FROM badge_templates WHERE id = ? AND organization_id IN (?, 0)",
            (data['badge_template_id'], org_id)
        ).fetchone()
        if not template:
            return jsonify({"error": "Badge template not found"}), 404

        section = conn.execute(
            """SELECT g.section FROM participant_groups pg JOIN scout_groups g ON g.id = pg.group_id
               WHERE pg.participant_id = ? AND pg.organization_id = ?""",
            (participant_id, org_id)
        ).fetchone()
        if not section_matches(template['section'], section['section'] if section else None):
            return jsonify({"error": "Badge template does not match the participant's section"}), 400

        existing = [row['level'] for row in conn.execute(
            """SELECT level FROM badge_progress
               WHERE participant_id = ? AND organization_id = ? AND badge_template_id = ? AND status <> 'rejected'""",
            (participant_id, org_id, template['id'])
        ).fetchall()]

        try:
            level = determine_next_level(existing, get_level_count(template['levels'], template['level_count']),
                                         requested_level)
        except BadgeLevelError as e:
            return jsonify({"error": str(e)}), 400
        if level is None:
            return jsonify({"error": "All levels for this badge have already been recorded"}), 400

        cursor = conn.execute(
            """INSERT INTO badge_progress
               (participant_id, organization_id, badge_template_id, level, star_type, objectif,
                description, fierte, raison, date_obtention, status)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'pending')""",
            (participant_id, org_id, template['id'], level, normalize_star_type(data.get('star_type')),
             sanitize_input(data.get('objectif')), sanitize_input(data.get('description')),
             1 if data.get('fierte') else 0, sanitize_input(data.get('raison')),
             parse_iso_date(data.get('date_obtention')))
        )
        conn.commit()
        progress_id = cursor.lastrowid
    finally:
        conn.close()

    return jsonify({"status": "success", "message": "Badge progress submitted.", "id": progress_id,
                    "level": level}), 201


def _set_badge_status(user_data, new_status):
    data = request.get_json(silent=True) or {}
    badge_id = data.get('badge_id')
    if not badge_id:
        return jsonify({"error": "Missing required field: 'badge_id'"}), 400

    org_id = user_data['organization_id']
    conn = get_db_connection()
    try:
        entry = conn.execute(
            "SELECT * FROM badge_progress WHERE id = ? AND organization_id = ?", (badge_id, org_id)
        ).fetchone()
        if not entry:
            return jsonify({"error": "Badge progress not found"}), 404
        if entry['status'] != 'pending':
            return jsonify({"error": f"Badge is already {entry['status']}"}), 409

        conn.execute(
            "UPDATE badge_progress SET status = ?, approval_date = ? WHERE id = ?",
            (new_status, two_factor.db_timestamp() if new_status == 'approved' else None, badge_id)
        )

        points_awarded = 0
        if new_status == 'approved':
            points_awarded = get_point_system_rules(conn, org_id).get('badges', {}).get('earn', 0)
            if points_awarded:
                add_points(conn, org_id, points_awarded, participant_id=entry['participant_id'],
                           group_id=get_participant_group_id(conn, entry['participant_id'], org_id))
        conn.commit()
        total = participant_total(conn, org_id, entry['participant_id'])
    finally:
        conn.close()

    logger.info(f"Badge progress {badge_id} {new_status} by {user_data['user_id']}")
    return jsonify({"status": "success", "message": f"Badge {new_status}.", "points": points_awarded,
                    "totalPoints": total})


@app.route('/api/approve-badge', methods=['PUT'])
@token_required
@permission_required('badges.approve', block_demo=True)
def approve_badge(user_data):
    return _set_badge_status(user_data, 'approved')


@app.route('/api/reject-badge', methods=['PUT'])
@token_required
@permission_required('badges.approve', block_demo=True)
def reject_badge(user_data):
    return _set_badge_status(user_data, 'rejected')


BADGE_PROGRESS_SELECT = """
    SELECT bp.id, bp.participant_id, bp.badge_template_id, bp.level, bp.star_type, bp.objectif,
           bp.description, bp.fierte, bp.raison, bp.date_obtention, bp.status, bp.approval_date,
           bp.delivered_at, bt.name AS badge_name, bt.section, p.first_name, p.last_name
    FROM badge_progress bp
    JOIN badge_templates bt ON bt.id = bp.badge_template_id
    JOIN participants p ON p.id = bp.participant_id
"""


@app.route('/api/pending-badges', methods=['GET'])
@token_required
@permission_required('badges.view')
def get_pending_badges(user_data):
    conn = get_db_connection()
    try:
        rows = conn.execute(BADGE_PROGRESS_SELECT + " WHERE bp.organization_id = ? AND bp.status = 'pending' "
                            "ORDER BY bp.created_at", (user_data['organization_id'],)).fetchall()
    finally:
        conn.close()
    return jsonify([dict(row) for row in rows])


@app.route('/api/badge-progress', methods=['GET'])
@token_required
@permission_required()
def get_badge_progress(user_data):
    participant_id = int_arg('participant_id')
    if not participant_id:
        return jsonify({"error": "participant_id is required"}), 400

    conn = get_db_connection()
    try:
        if not user_has_access_to_participant(conn, user_data['user_id'], participant_id,
                                              user_data['organization_id'], user_data['data_scope']):
            return jsonify({"error": "Participant not found"}), 404
        rows = conn.execute(BADGE_PROGRESS_SELECT + " WHERE bp.organization_id = ? AND bp.participant_id = ? "
                            "ORDER BY bt.name, bp.level",
                            (user_data['organization_id'], participant_id)).fetchall()
    finally:
        conn.close()
    return jsonify([dict(row) for row in rows])


@app.route('/api/badge-summary', methods=['GET'])
@token_required
@permission_required('badges.view')
def get_badge_summary(user_data):
    conn = get_db_connection()
    try:
        rows = conn.execute(
            """SELECT bp.participant_id, p.first_name, p.last_name, bp.badge_template_id, bt.name AS badge_name,
                      COUNT(CASE WHEN bp.status = 'approved' THEN 1 END) AS approved_levels,
                      COUNT(CASE WHEN bp.status = 'pending' THEN 1 END) AS pending_levels,
                      MAX(CASE WHEN bp.status = 'approved' THEN bp.level END) AS highest_level
               FROM badge_progress bp
               JOIN badge_templates bt ON bt.id = bp.badge_template_id
               JOIN participants p ON p.id = bp.participant_id
               WHERE bp.organization_id = ?
               GROUP BY bp.participant_id, bp.badge_template_id
               ORDER BY p.first_name, bt.name""",
            (user_data['organization_id'],)
        ).fetchall()
    finally:
        conn.close()
    return jsonify([dict(row) for row in rows])


@app.route('/api/badges-awaiting-delivery', methods=['GET'])
@token_required
@permission_required('badges.view')
def get_badges_awaiting_delivery(user_data):
    conn = get_db_connection()
    try:
        rows = conn.execute(BADGE_PROGRESS_SELECT + " WHERE bp.organization_id = ? AND bp.status = 'approved' "
                            "AND bp.delivered_at IS NULL ORDER BY bp.approval_date",
                            (user_data['organization_id'],)).fetchall()
    finally:
        conn.close()
    return jsonify([dict(row) for row in rows])


def _mark_delivered(conn, organization_id, badge_ids):
    if not badge_ids:
        return 0
    cursor = conn.execute(
        f"""UPDATE badge_progress SET delivered_at = ?
            WHERE organization_id = ? AND status = 'approved' AND delivered_at IS NULL
              AND id IN ({','.join('?' * len(badge_ids))})""",
        [two_factor.db_timestamp(), organization_id] + list(badge_ids)
    )
    conn.commit()
    return cursor.rowcount


@app.route('/api/mark-badge-delivered', methods=['POST'])
@token_required
@permission_required('badges.manage', block_demo=True)
def mark_badge_delivered(user_data):
    data = request.get_json(silent=True) or {}
    if not data.get('badge_id'):
        return jsonify({"error": "Missing required field: 'badge_id'"}), 400

    conn = get_db_connection()
    try:
        updated = _mark_delivered(conn, user_data['organization_id'], [data['badge_id']])
    finally:
        conn.close()
    if not updated:
        return jsonify({"error": "Badge not found or not awaiting delivery"}), 404
    return jsonify({"status": "success", "message": "Badge marked as delivered."})


@app.route('/api/mark-badges-delivered-bulk', methods=['POST'])
@token_required
@permission_required('badges.manage', block_demo=True)
def mark_badges_delivered_bulk(user_data):
    data = request.get_json(silent=True) or {}
    badge_ids = data.get('badge_ids')
    if not isinstance(badge_ids, list) or not badge_ids:
        return jsonify({"error": "badge_ids must be a non-empty list"}), 400

    conn = get_db_connection()
    try:
        updated = _mark_delivered(conn, user_data['organization_id'], badge_ids)
    finally:
        conn.close()
    return jsonify({"status": "success", "message": f"{updated} badge(s) marked as delivered.", "count": updated})


# =================================================================
#   MEETINGS
# =================================================================

PREPARATION_LIMITS = {'endroit': 500, 'notes': 5000, 'animateur_responsable': 200}
MIN_DURATION_MINUTES = 15


def _preparation_dict(row):
    preparation = dict(row)
    for field in ('youth_of_honor', 'activities'):
        try:
            preparation[field] = json.loads(preparation[field] or '[]')
        except ValueError:
            preparation[field] = []
    return preparation


@app.route('/api/reunion-preparation', methods=['GET'])
@token_required
@permission_required()
def get_reunion_preparation(user_data):
    date = parse_iso_date(request.args.get('date')) or datetime.date.today().isoformat()
    conn = get_db_connection()
    try:
        row = conn.execute("SELECT * FROM reunion_preparations WHERE organization_id = ? AND date = ?",
                           (user_data['organization_id'], date)).fetchone()
    finally:
        conn.close()
    return jsonify({"date": date, "preparation": _preparation_dict(row) if row else None})


@app.route('/api/save-reunion-preparation', methods=['POST'])
@token_required
@permission_required('attendance.manage', block_demo=True)
def save_reunion_preparation(user_data):
    data = request.get_json(silent=True) or {}
    date = parse_iso_date(data.get('date'))
    if not date:
        return jsonify({"error": "A valid date is required"}), 400

    for field, max_length in PREPARATION_LIMITS.items():
        if data.get(field) and len(str(data[field])) > max_length:
            return jsonify({"error": f"{field} cannot exceed {max_length} characters"}), 400

    duration_override = data.get('duration_override')
    if duration_override not in (None, ''):
        try:
            duration_override = int(duration_override)
        except (TypeError, ValueError):
            return jsonify({"error": "duration_override must be a number of minutes"}), 400
        if duration_override < MIN_DURATION_MINUTES:
            return jsonify({"error": f"duration_override must be at least {MIN_DURATION_MINUTES} minutes"}), 400
    else:
        duration_override = None

    youth_of_honor = data.get('youth_of_honor') or []
    activities = data.get('activities') or []
    if not isinstance(youth_of_honor, list) or not isinstance(activities, list):
        return jsonify({"error": "youth_of_honor and activities must be lists"}), 400

    conn = get_db_connection()
    try:
        conn.execute(
            """INSERT INTO reunion_preparations
               (organization_id, date, animateur_responsable, youth_of_honor, endroit, activities, notes,
                duration_override, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
               ON CONFLICT (organization_id, date) DO UPDATE SET
                 animateur_responsable = excluded.animateur_responsable,
                 youth_of_honor = excluded.youth_of_honor,
                 endroit = excluded.endroit,
                 activities = excluded.activities,
                 notes = excluded.notes,
                 duration_override = excluded.duration_override,
                 updated_at = CURRENT_TIMESTAMP""",
            (user_data['organization_id'], date, sanitize_input(data.get('animateur_responsable')),
             json.dumps(youth_of_honor), sanitize_input(data.get('endroit')), json.dumps(activities),
             sanitize_input(data.get('notes')), duration_override)
        )
        conn.commit()
    finally:
        conn.close()
    return jsonify({"status": "success", "message": "Meeting preparation saved.", "date": date})


@app.route('/api/reunion-dates', methods=['GET'])
@token_required
@permission_required()
def get_reunion_dates(user_data):
    conn = get_db_connection()
    try:
        rows = conn.execute("SELECT date FROM reunion_preparations WHERE organization_id = ? ORDER BY date DESC",
                            (user_data['organization_id'],)).fetchall()
    finally:
        conn.close()
    return jsonify([row['date'] for row in rows])


@app.route('/api/next-meeting-info', methods=['GET'])
@token_required
@permission_required()
def get_next_meeting_info(user_data):
    conn = get_db_connection()
    try:
        row = conn.execute(
            "SELECT * FROM reunion_preparations WHERE organization_id = ? AND date >= ? ORDER BY date LIMIT 1",
            (user_data['organization_id'], datetime.date.today().isoformat())
        ).fetchone()
    finally:
        conn.close()
    if not row:
        return jsonify({"error": "No upcoming meeting"}), 404
    return jsonify(_preparation_dict(row))


@app.route('/api/guests-by-date', methods=['GET'])
@token_required
@permission_required('attendance.view')
def get_guests_by_date(user_data):
    date = parse_iso_date(request.args.get('date')) or datetime.date.today().isoformat()
    conn = get_db_connection()
    try:
        rows = conn.execute(
            """SELECT id, name, email_parent, attendance_date FROM guests
               WHERE organization_id = ? AND attendance_date = ?""",
            (user_data['organization_id'], date)
        ).fetchall()
    finally:
        conn.close()
    return jsonify([dict(row) for row in rows])


@app.route('/api/save-guest', methods=['POST'])
@token_required
@permission_required('attendance.manage', block_demo=True)
def save_guest(user_data):
    data = request.get_json(silent=True)
    valid, error = validate_required_fields(data, ['name', 'attendance_date'])
    if not valid:
        return jsonify({"error": error}), 400
    date = parse_iso_date(data['attendance_date'])
    if not date:
        return jsonify({"error": "Invalid attendance_date"}), 400

    conn = get_db_connection()
    try:
        cursor = conn.execute(
            "INSERT INTO guests (organization_id, name, email_parent, attendance_date) VALUES (?, ?, ?, ?)",
            (user_data['organization_id'], sanitize_input(data['name']),
             (data.get('email_parent') or '').strip().lower() or None, date)
        )
        conn.commit()
    finally:
        conn.close()
    return jsonify({"status": "success", "message": "Guest saved.", "id": cursor.lastrowid}), 201


@app.route('/api/get_reminder', methods=['GET'])
@token_required
@permission_required()
def get_reminder(user_data):
    conn = get_db_connection()
    try:
        row = conn.execute("SELECT reminder_text, reminder_date, recurring_reminder FROM rappel_reunion "
                           "WHERE organization_id = ?", (user_data['organization_id'],)).fetchone()
    finally:
        conn.close()
    if not row:
        return jsonify({"reminder": None})
    reminder = dict(row)
    reminder['recurring_reminder'] = bool(reminder['recurring_reminder'])
    return jsonify({"reminder": reminder})


@app.route('/api/reminder', methods=['POST'])
@token_required
@permission_required('attendance.manage', block_demo=True)
def save_reminder(user_data):
    data = request.get_json(silent=True)
    valid, error = validate_required_fields(data, ['reminder_text'])
    if not valid:
        return jsonify({"error": error}), 400

    conn = get_db_connection()
    try:
        conn.execute(
            """INSERT INTO rappel_reunion (organization_id, reminder_text, reminder_date, recurring_reminder)
               VALUES (?, ?, ?, ?)
               ON CONFLICT (organization_id) DO UPDATE SET
                 reminder_text = excluded.reminder_text,
                 reminder_date = excluded.reminder_date,
                 recurring_reminder = excluded.recurring_reminder,
                 creation_time = CURRENT_TIMESTAMP""",
            (user_data['organization_id'], sanitize_input(data['reminder_text']),
             parse_iso_date(data.get('reminder_date')), 1 if data.get('recurring_reminder') else 0)
        )
        conn.commit()
    finally:
        conn.close()
    return jsonify({"status": "success", "message": "Reminder saved."})


@app.route('/api/meeting-sections', methods=['GET'])
@token_required
@permission_required()
def get_meeting_sections(user_data):
    conn = get_db_connection()
    try:
        config = get_meeting_section_config(conn, user_data['organization_id'])
    finally:
        conn.close()
    return jsonify(config)


# =================================================================
#   PUSH NOTIFICATIONS
# =================================================================

@app.route('/api/push-subscription', methods=['POST'])
@token_required
@permission_required()
def save_push_subscription(user_data):
    data = request.get_json(silent=True) or {}
    keys = data.get('keys') or {}
    if not data.get('endpoint') or not keys.get('p256dh') or not keys.get('auth'):
        return jsonify({"error": "endpoint, keys.p256dh and keys.auth are required"}), 400

    conn = get_db_connection()
    try:
        conn.execute(
            """INSERT INTO subscribers (user_id, organization_id, endpoint, p256dh, auth) VALUES (?, ?, ?, ?, ?)
               ON CONFLICT (endpoint) DO UPDATE SET
                 user_id = excluded.user_id, organization_id = excluded.organization_id,
                 p256dh = excluded.p256dh, auth = excluded.auth""",
            (user_data['user_id'], user_data['organization_id'], data['endpoint'], keys['p256dh'], keys['auth'])
        )
        conn.commit()
    finally:
        conn.close()
    logger.info(f"[PUSH] Subscription saved for user {user_data['user_id']}")
    return jsonify({"status": "success", "message": "Subscription saved."}), 202


@app.route('/api/push-subscribers', methods=['GET'])
@token_required
@permission_required('communications.send')
def get_push_subscribers(user_data):
    conn = get_db_connection()
    try:
        rows = conn.execute(
            """SELECT s.id, s.user_id, u.email, u.full_name, s.created_at
               FROM subscribers s LEFT JOIN users u ON u.id = s.user_id
               WHERE s.organization_id = ? ORDER BY s.created_at DESC""",
            (user_data['organization_id'],)
        ).fetchall()
    finally:
        conn.close()
    return jsonify([dict(row) for row in rows])


@app.route('/api/send-notification', methods=['POST'])
@token_required
@permission_required('communications.send', block_demo=True)
def send_notification(user_data):
    data = request.get_json(silent=True)
    valid, error = validate_required_fields(data, ['title', 'body'])
    if not valid:
        return jsonify({"error": error}), 400
    if len(data['title']) > 200:
        return jsonify({"error": "Title cannot exceed 200 characters"}), 400
    if len(data['body']) > 1000:
        return jsonify({"error": "Body cannot exceed 1000 characters"}), 400
    if not push_service.is_configured():
        return jsonify({"error": "Push notifications are not configured"}), 503

    payload = push_service.build_notification_payload(sanitize_input(data['title']), sanitize_input(data['body']))
    sent, failed = 0, 0
    conn = get_db_connection()
    try:
        subscriptions = conn.execute(
            "SELECT endpoint, p256dh, auth, user_id FROM subscribers WHERE organization_id = ?",
            (user_data['organization_id'],)
        ).fetchall()
        expired_endpoints = []
        for subscription in subscriptions:
            ok, error, expired = push_service.send_push(subscription, payload)
            if ok:
                sent += 1
            else:
                failed += 1
            if expired:
                expired_endpoints.append(subscription['endpoint'])
        for endpoint in expired_endpoints:
            conn.execute("DELETE FROM subscribers WHERE endpoint = ?", (endpoint,))
        conn.commit()
    finally:
        conn.close()

    logger.info(f"[PUSH] Notification sent by {user_data['user_id']}: {sent} sent, {failed} failed")
    return jsonify({"status": "success", "sent": sent, "failed": failed})


# =================================================================
#   ANNOUNCEMENTS
# =================================================================

@app.route('/api/announcements', methods=['POST'])
@token_required
@permission_required('communications.send', block_demo=True)
def create_announcement(user_data):
    payload = announcements.normalize_announcement_payload(request.get_json(silent=True))
    if not payload['subject'] or not payload['message']:
        return jsonify({"error": "Subject and message are required"}), 400
    if not payload['recipient_roles']:
        return jsonify({"error": "No valid roles provided"}), 400

    status = announcements.determine_initial_status(payload)
    scheduled_at = payload['scheduled_at']

    conn = get_db_connection()
    try:
        cursor = conn.execute(
            """INSERT INTO announcements
               (organization_id, created_by, subject, message, recipient_roles, recipient_groups,
                scheduled_at, status)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (user_data['organization_id'], user_data['user_id'], payload['subject'], payload['message'],
             json.dumps(payload['recipient_roles']), json.dumps(payload['recipient_groups']),
             two_factor.db_timestamp(scheduled_at) if scheduled_at else None, status)
        )
        conn.commit()
        announcement_id = cursor.lastrowid
        logger.info(f"[ANNOUNCEMENTS] #{announcement_id} created by {user_data['user_id']} - status: {status}")

        delivery = None
        if status == 'sending':
            delivery = announcements.dispatch_by_id(conn, announcement_id)
            status = delivery['status']
        elif status == 'scheduled' and announcement_scheduler is not None:
            announcement_scheduler.schedule(announcement_id, scheduled_at)
    finally:
        conn.close()

    return jsonify({"status": "success", "message": "Announcement saved.", "id": announcement_id,
                    "announcementStatus": status, "delivery": delivery}), 201


@app.route('/api/announcements', methods=['GET'])
@token_required
@permission_required('communications.send')
def list_announcements(user_data):
    org_id = user_data['organization_id']
    conn = get_db_connection()
    try:
        rows = conn.execute(
            "SELECT * FROM announcements WHERE organization_id = ? ORDER BY created_at DESC, id DESC LIMIT 50",
            (org_id,)
        ).fetchall()
        ids = [row['id'] for row in rows]
        logs_by_announcement = {announcement_id: [] for announcement_id in ids}
        if ids:
            for log in conn.execute(
                f"""SELECT announcement_id, channel, recipient_email, recipient_user_id, status,
                           error_message, metadata, sent_at
                    FROM announcement_logs WHERE announcement_id IN ({','.join('?' * len(ids))})
                    ORDER BY id""",
                ids
            ).fetchall():
                entry = dict(log)
                entry['metadata'] = json.loads(entry['metadata']) if entry['metadata'] else None
                logs_by_announcement[log['announcement_id']].append(entry)
        templates = []
        for owner_id in (org_id, SHARED_ORGANIZATION_ID):
            owned = get_setting(conn, owner_id, 'announcement_templates', fallback_to_shared=False)
            if isinstance(owned, list):
                templates.extend(owned)
    finally:
        conn.close()

    items = []
    for row in rows:
        item = announcements.escape_for_listing(row)
        item['recipient_roles'] = json.loads(item['recipient_roles'] or '[]')
        item['recipient_groups'] = json.loads(item['recipient_groups'] or '[]')
        item['logs'] = logs_by_announcement[row['id']]
        items.append(item)

    return jsonify({"announcements": items, "templates": templates})


# =================================================================
#   SISC IMPORT
# =================================================================

@app.route('/api/import-sisc', methods=['POST'])
@token_required
@permission_required('org.edit', block_demo=True)
def import_sisc(user_data):
    data = request.get_json(silent=True) or {}
    csv_content = data.get('csvContent')
    if not csv_content or not isinstance(csv_content, str):
        return jsonify({"error": "csvContent is required"}), 400

    conn = get_db_connection()
    try:
        importer = SiscImporter(conn, user_data['organization_id'])
        stats = importer.run(csv_content)
        verification = importer.verification()
    except ImportValidationError as e:
        return jsonify({"error": str(e)}), 400
    except sqlite3.Error as e:
        logger.error(f"[IMPORT] SISC import failed: {e}\n{traceback.format_exc()}")
        return jsonify({"error": "Internal Server Error"}), 500
    finally:
        conn.close()

    return jsonify({"status": "success", "message": "Import completed.", "stats": stats,
                    "verification": verification})


# =================================================================
#   OFFLINE PREPARATION & SYNC
# =================================================================

def _offline_engine(conn, organization_id):
    return OfflineSyncEngine(conn, organization_id, max_days=Config.OFFLINE_MAX_DAYS,
                             cache_days=Config.OFFLINE_CACHE_DAYS)


@app.route('/api/offline/prepare-activity', methods=['POST'])
@token_required
@permission_required('attendance.view')
def offline_prepare_activity(user_data):
    data = request.get_json(silent=True) or {}
    conn = get_db_connection()
    try:
        bundle = _offline_engine(conn, user_data['organization_id']).prepare_activity(
            data.get('start_date'), data.get('end_date'))
    except OfflineRangeError as e:
        return jsonify({"error": str(e)}), 400
    finally:
        conn.close()
    return jsonify({"status": "success", "data": bundle})


@app.route('/api/offline/status', methods=['GET'])
@token_required
@permission_required('attendance.view')
def offline_status(user_data):
    conn = get_db_connection()
    try:
        status = _offline_engine(conn, user_data['organization_id']).get_status()
    finally:
        conn.close()
    return jsonify(status)


@app.route('/api/offline/sync-attendance', methods=['POST'])
@token_required
@permission_required('attendance.manage', block_demo=True)
def offline_sync_attendance(user_data):
    data = request.get_json(silent=True) or {}
    actions = data.get('actions')
    if not isinstance(actions, list):
        return jsonify({"error": "actions must be a list"}), 400

    org_id = user_data['organization_id']
    conn = get_db_connection()
    try:
        result = _offline_engine(conn, org_id).replay_outbox(
            actions, user_data['user_id'],
            lambda pid: user_has_access_to_participant(conn, user_data['user_id'], pid, org_id,
                                                       user_data['data_scope'])
        )
    except sqlite3.Error as e:
        logger.error(f"[OFFLINE] Outbox replay failed: {e}\n{traceback.format_exc()}")
        return jsonify({"error": "Internal Server Error"}), 500
    finally:
        conn.close()
    return jsonify({"status": "success", **result})


# =================================================================
#   REPORTS & ANALYTICS
# =================================================================

def _report_range():
    today = datetime.date.today()
    start = parse_iso_date(request.args.get('start_date')) or (today - datetime.timedelta(days=90)).isoformat()
    end = parse_iso_date(request.args.get('end_date')) or today.isoformat()
    return start, end


def _attendance_rows(conn, organization_id, start, end):
    return conn.execute(
        """SELECT a.participant_id, a.date, a.status, p.first_name, p.last_name
           FROM attendance a
           JOIN participants p ON p.id = a.participant_id
           JOIN participant_organizations po ON po.participant_id = p.id AND po.organization_id = a.organization_id
           WHERE a.organization_id = ? AND a.date BETWEEN ? AND ?
           ORDER BY a.date""",
        (organization_id, start, end)
    ).fetchall()


STATUS_CODES = {'present': 'P', 'absent': 'A', 'late': 'R', 'excused': 'E'}


@app.route('/api/reports/attendance-export', methods=['GET'])
@token_required
@permission_required('reports.view')
def export_attendance(user_data):
    """Excel sheet: one row per participant, one column per meeting date."""
    start, end = _report_range()
    conn = get_db_connection()
    try:
        rows = _attendance_rows(conn, user_data['organization_id'], start, end)
    finally:
        conn.close()

    dates = sorted({row['date'] for row in rows})
    matrix = {}
    names = {}
    for row in rows:
        names[row['participant_id']] = f"{row['last_name']}, {row['first_name']}"
        matrix.setdefault(row['participant_id'], {})[row['date']] = row['status']

    wb = Workbook()
    ws = wb.active
    ws.title = "Attendance"

    headers = ["Participant"] + dates + ["Presence %"]
    ws.append(headers)
    header_fill = PatternFill(start_color="D9E1F2", end_color="D9E1F2", fill_type="solid")
    for cell in ws[1]:
        cell.font = Font(bold=True)
        cell.alignment = Alignment(horizontal='center')
        cell.fill = header_fill

    for participant_id in sorted(names, key=lambda pid: names[pid]):
        marks = matrix[participant_id]
        counted = [status for status in marks.values() if status != 'excused']
        attended = [status for status in counted if status in analytics.ATTENDED_STATUSES]
        rate = round(len(attended) / len(counted) * 100, 1) if counted else None
        ws.append([names[participant_id]] + [STATUS_CODES.get(marks.get(d), '') for d in dates] + [rate])

    ws.column_dimensions['A'].width = 30

    buffer = io.BytesIO()
    wb.save(buffer)
    buffer.seek(0)

    logger.info(f"Attendance export {start} to {end} for org {user_data['organization_id']}")
    return send_file(
        buffer,
        as_attachment=True,
        download_name=f"attendance_{start}_{end}.xlsx",
        mimetype='application/vnd.openxmlformats-officedocument.spreadsheetml.sheet'
    )


@app.route('/api/reports/attendance-analytics', methods=['GET'])
@token_required
@permission_required('reports.view')
def attendance_analytics(user_data):
    start, end = _report_range()
    org_id = user_data['organization_id']
    conn = get_db_connection()
    try:
        rows = _attendance_rows(conn, org_id, start, end)
        thresholds = get_setting(conn, org_id, 'attendance_thresholds') or {}
    finally:
        conn.close()

    target = float(thresholds.get('target', Config.MINIMUM_ATTENDANCE_PERCENTAGE))
    critical = float(thresholds.get('critical', Config.ATTENDANCE_WARNING_THRESHOLD))

    summaries = analytics.summarize_participants(rows, target, critical)
    days = analytics.daily_rates(rows)
    try:
        chart = analytics.generate_attendance_trend_graph(days, target)
    except Exception as e:
        logger.error(f"Error generating attendance chart: {e}\n{traceback.format_exc()}")
        chart = None

    return jsonify({
        "start_date": start,
        "end_date": end,
        "thresholds": {"target": target, "critical": critical},
        "participants": summaries,
        "atRisk": analytics.get_at_risk_participants(summaries, target),
        "days": days,
        "trendChart": chart,
    })


# =================================================================
#   STARTUP
# =================================================================

def initialize():
    """Create the schema, seed roles and the default troop, then start the announcement scheduler."""
    global announcement_scheduler

    conn = get_db_connection()
    try:
        create_schema(conn)
        seed_roles(conn)
        seeded = seed_default_organization(conn)
        if seeded:
            logger.warning(f"Created default organization {seeded[0]} with administrator {seeded[1]}; "
                           f"change its password after the first login")
    finally:
        conn.close()
    logger.info(f"Database ready at {app.config['DATABASE_PATH']}")

    if Config.ENABLE_ANNOUNCEMENT_SCHEDULER and announcement_scheduler is None:
        announcement_scheduler = announcements.AnnouncementScheduler(
            connect_for_jobs, fallback_minutes=Config.ANNOUNCEMENT_FALLBACK_MINUTES
        )
        announcement_scheduler.start()

    if not push_service.is_configured():
        logger.warning("[PUSH] VAPID keys not set - push notifications disabled")
    if not Config.SENDER_EMAIL and not Config.EMAIL_TEST_MODE:
        logger.warning("SENDER_EMAIL not set - emails will fail")


# --- Main Execution ---
if __name__ == '__main__':
    initialize()
    print(f"\n{'=' * 60}")
    print(f"  Scout Troop Manager Server")
    print(f"  Listening on http://{Config.HOST}:{Config.PORT}")
    print(f"{'=' * 60}\n")
    app.run(host=Config.HOST, port=Config.PORT, debug=False, use_reloader=False,
            request_handler=TimedRequestHandler)
