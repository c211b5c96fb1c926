# =================================================================
#   Scout Troop Manager - Two-Factor Authentication
#   Email verification codes and trusted devices
# =================================================================

import datetime
import hashlib
import logging
import secrets

logger = logging.getLogger(__name__)

# verify_code() outcomes
CODE_VALID = 'valid'
CODE_INVALID = 'invalid'
CODE_EXPIRED = 'expired'
CODE_TOO_MANY_ATTEMPTS = 'too_many_attempts'


def db_timestamp(moment=None):
    """UTC timestamp in the same layout SQLite uses for CURRENT_TIMESTAMP."""
    moment = moment or datetime.datetime.now(datetime.timezone.utc)
    return moment.strftime('%Y-%m-%d %H:%M:%S')


def generate_code():
    """Six-digit numeric code."""
    return str(secrets.randbelow(900000) + 100000)


def hash_token(value):
    return hashlib.sha256(value.encode('utf-8')).hexdigest()


def parse_device_name(user_agent):
    """Turn a User-Agent header into 'Browser on OS'."""
    if not user_agent:
        return 'Unknown Device'

    browser = 'Unknown Browser'
    if 'Edg' in user_agent:
        browser = 'Edge'
    elif 'OPR' in user_agent or 'Opera' in user_agent:
        browser = 'Opera'
    elif 'Chrome' in user_agent:
        browser = 'Chrome'
    elif 'Firefox' in user_agent:
        browser = 'Firefox'
    elif 'Safari' in user_agent:
        browser = 'Safari'

    os_name = 'Unknown OS'
    if 'Windows' in user_agent:
        os_name = 'Windows'
    elif 'Android' in user_agent:
        os_name = 'Android'
    elif 'iPhone' in user_agent or 'iPad' in user_agent:
        os_name = 'iOS'
    elif 'Mac OS X' in user_agent or 'Macintosh' in user_agent:
        os_name = 'macOS'
    elif 'Linux' in user_agent:
        os_name = 'Linux'

    return f"{browser} on {os_name}"


def store_code(conn, user_id, organization_id, code, ttl_minutes, ip_address=None, user_agent=None):
    """Persist the hash of a freshly generated code; returns its expiry timestamp."""
    expires_at = db_timestamp(datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(minutes=ttl_minutes))
    conn.execute(
        """INSERT INTO two_factor_codes
           (user_id, organization_id, code_hash, expires_at, ip_address, user_agent)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (user_id, organization_id, hash_token(code), expires_at, ip_address, user_agent)
    )
    conn.commit()
    logger.info(f"[2FA] Code stored for user {user_id} in org {organization_id}")
    return expires_at


def verify_code(conn, user_id, organization_id, code, max_attempts):
    """
    Check a code against the most recent unverified one for the user.
    Each wrong guess counts as an attempt; the code is burned after max_attempts.
    """
    record = conn.execute(
        """SELECT id, code_hash, attempts, expires_at FROM two_factor_codes
           WHERE user_id = ? AND organization_id = ? AND verified = 0
           ORDER BY id DESC LIMIT 1""",
        (user_id, organization_id)
    ).fetchone()

    if not record or record['expires_at'] <= db_timestamp():
        logger.warning(f"[2FA] No active code for user {user_id}")
        return CODE_EXPIRED

    if record['attempts'] >= max_attempts:
        logger.warning(f"[2FA] Too many attempts for user {user_id}")
        return CODE_TOO_MANY_ATTEMPTS

    if not secrets.compare_digest(record['code_hash'], hash_token(code)):
        conn.execute("UPDATE two_factor_codes SET attempts = attempts + 1 WHERE id = ?", (record['id'],))
        conn.commit()
        return CODE_INVALID

    conn.execute(
        "UPDATE two_factor_codes SET verified = 1, attempts = attempts + 1 WHERE id = ?",
        (record['id'],)
    )
    conn.commit()
    logger.info(f"[2FA] Code verified for user {user_id}")
    return CODE_VALID


def create_trusted_device(conn, user_id, organization_id, user_agent, valid_days):
    """Return the raw device token; only its hash is stored."""
    device_token = secrets.token_hex(32)
    expires_at = db_timestamp(datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(days=valid_days))
    conn.execute(
        """INSERT INTO trusted_devices
           (user_id, organization_id, device_token_hash, device_name, expires_at)
           VALUES (?, ?, ?, ?, ?)""",
        (user_id, organization_id, hash_token(device_token), parse_device_name(user_agent), expires_at)
    )
    conn.commit()
    logger.info(f"[2FA] Trusted device created for user {user_id}")
    return device_token


def verify_trusted_device(conn, user_id, organization_id, device_token):
    if not device_token:
        return False

    row = conn.execute(
        """SELECT id FROM trusted_devices
           WHERE user_id = ? AND organization_id = ? AND device_token_hash = ?
             AND is_active = 1 AND expires_at > ?""",
        (user_id, organization_id, hash_token(device_token), db_timestamp())
    ).fetchone()

    if not row:
        return False

    conn.execute("UPDATE trusted_devices SET last_used_at = ? WHERE id = ?", (db_timestamp(), row['id']))
    conn.commit()
    return True


def revoke_trusted_devices(conn, user_id, organization_id):
    cursor = conn.execute(
        "UPDATE trusted_devices SET is_active = 0 WHERE user_id = ? AND organization_id = ? AND is_active = 1",
        (user_id, organization_id)
    )
    conn.commit()
    return cursor.rowcount
