
# =================================================================
#   Scout Troop Manager - Application Configuration
#   Loads settings from environment variables (.env file)
# =================================================================

import os
import secrets
from dotenv import load_dotenv

# Load .env file from the same directory as this file
load_dotenv(os.path.join(os.path.dirname(os.path.abspath(__file__)), '.env'))


def _get_or_generate_secret_key():
    """
    Gets SECRET_KEY from environment, or auto-generates one on first run.
    If auto-generated, writes it back to the .env file so it persists.
    """
    key = os.environ.get('SECRET_KEY', '')

    if not key or key == 'auto_generate_on_first_run':
        key = secrets.token_hex(32)

        env_path = os.path.join(os.path.dirname(os.path.abspath(__file__)), '.env')
        try:
            if os.path.exists(env_path):
                with open(env_path, 'r') as f:
                    content = f.read()

                if 'SECRET_KEY=' in content:
                    content = content.replace('SECRET_KEY=auto_generate_on_first_run', f'SECRET_KEY={key}')
                else:
                    content = content.rstrip('\n') + f'\nSECRET_KEY={key}\n'

                with open(env_path, 'w') as f:
                    f.write(content)
                print("[CONFIG] Auto-generated SECRET_KEY and saved to .env")
            else:
                with open(env_path, 'w') as f:
                    f.write(f'SECRET_KEY={key}\n')
                print("[CONFIG] Created .env with auto-generated SECRET_KEY")
        except OSError as e:
            print(f"[CONFIG] Warning: Could not save SECRET_KEY to .env: {e}")
            print("[CONFIG] The key will be regenerated on next restart!")

    return key


def _env_bool(name, default='false'):
    return os.environ.get(name, default).lower() in ('1', 'true', 'yes')


# =================================================================
#   Configuration Classes
# =================================================================

class BaseConfig:
    """Base configuration shared by all environments."""

    # Security
    SECRET_KEY = _get_or_generate_secret_key()
    JWT_EXPIRATION_DAYS = int(os.environ.get('JWT_EXPIRATION_DAYS', 7))
    PASSWORD_RESET_TTL_MINUTES = 60

    # Database
    DATABASE_PATH = os.environ.get('DATABASE_PATH', 'scouts.db')

    # Default tenant and administrator created by database_setup.py
    DEFAULT_ORGANIZATION_NAME = os.environ.get('DEFAULT_ORGANIZATION_NAME', 'Scout Troop')
    ADMIN_DEFAULT_EMAIL = os.environ.get('ADMIN_DEFAULT_EMAIL', 'admin@example.org')
    ADMIN_DEFAULT_PASSWORD = os.environ.get('ADMIN_DEFAULT_PASSWORD', 'admin')

    # Server
    HOST = os.environ.get('HOST', '0.0.0.0')
    PORT = int(os.environ.get('PORT', 5000))
    APP_BASE_URL = os.environ.get('APP_BASE_URL', 'http://localhost:5000')

    # Rate Limiting
    RATE_LIMIT_LOGIN = "5 per minute"    # Max login attempts per IP
    RATE_LIMIT_API = "100 per minute"    # Max API calls per IP

    # ===== TWO-FACTOR AUTHENTICATION =====
    TWO_FACTOR_CODE_TTL_MINUTES = 10
    TWO_FACTOR_MAX_ATTEMPTS = 5
    TRUSTED_DEVICE_DAYS = 90

    # Pagination
    PAGINATION_DEFAULT_LIMIT = 50
    PAGINATION_MAX_LIMIT = 100

    # ===== OFFLINE PREPARATION =====
    OFFLINE_MAX_DAYS = 14                # Longest camp that can be prepared offline
    OFFLINE_CACHE_DAYS = 10              # How long a prepared bundle stays valid

    # ===== ATTENDANCE ANALYTICS =====
    MINIMUM_ATTENDANCE_PERCENTAGE = 75
    ATTENDANCE_WARNING_THRESHOLD = 60

    # --- Email (SMTP) ---
    SMTP_SERVER = os.environ.get('SMTP_SERVER', 'smtp.gmail.com')
    SMTP_PORT = int(os.environ.get('SMTP_PORT', 587))
    SENDER_EMAIL = os.environ.get('SENDER_EMAIL', '')
    SENDER_PASSWORD = os.environ.get('SENDER_PASSWORD', '')
    SENDER_NAME = os.environ.get('SENDER_NAME', 'Scout Troop Manager')
    EMAIL_TEST_MODE = _env_bool('EMAIL_TEST_MODE')

    # --- Web Push (VAPID) ---
    VAPID_PUBLIC_KEY = os.environ.get('VAPID_PUBLIC_KEY', '')
    VAPID_PRIVATE_KEY = os.environ.get('VAPID_PRIVATE_KEY', '')
    VAPID_CLAIM_EMAIL = os.environ.get('VAPID_CLAIM_EMAIL', 'admin@example.org')

    # --- WhatsApp (Twilio) ---
    TWILIO_ACCOUNT_SID = os.environ.get('TWILIO_ACCOUNT_SID', '')
    TWILIO_AUTH_TOKEN = os.environ.get('TWILIO_AUTH_TOKEN', '')
    TWILIO_WHATSAPP_FROM = os.environ.get('TWILIO_WHATSAPP_FROM', '')

    # --- Announcement scheduler ---
    ENABLE_ANNOUNCEMENT_SCHEDULER = _env_bool('ENABLE_ANNOUNCEMENT_SCHEDULER', 'true')
    ANNOUNCEMENT_FALLBACK_MINUTES = int(os.environ.get('ANNOUNCEMENT_FALLBACK_MINUTES', 60))


class DevelopmentConfig(BaseConfig):
    """Development environment configuration."""
    DEBUG = True
    TESTING = False


class ProductionConfig(BaseConfig):
    """Production environment configuration."""
    DEBUG = False
    TESTING = False


class TestingConfig(BaseConfig):
    """Testing environment configuration."""
    DEBUG = True
    TESTING = True
    EMAIL_TEST_MODE = True
    ENABLE_ANNOUNCEMENT_SCHEDULER = False


# --- Select configuration based on FLASK_ENV ---
_env = os.environ.get('FLASK_ENV', 'development').lower()
_config_map = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig
}

Config = _config_map.get(_env, DevelopmentConfig)
