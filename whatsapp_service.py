# =================================================================
#   Scout Troop Manager - WhatsApp Service (Twilio)
# =================================================================

import logging

import requests
from twilio.rest import Client
from twilio.base.exceptions import TwilioException

from config import Config

logger = logging.getLogger(__name__)


def is_configured():
    return bool(Config.TWILIO_ACCOUNT_SID and Config.TWILIO_AUTH_TOKEN and Config.TWILIO_WHATSAPP_FROM)


def normalize_phone(raw):
    """E.164 form of a phone number, or None when it cannot be interpreted."""
    raw = (raw or '').strip()
    if raw.startswith('whatsapp:'):
        raw = raw[len('whatsapp:'):]
    digits = ''.join(ch for ch in raw if ch.isdigit())

    if raw.startswith('+') and len(digits) >= 8:
        return '+' + digits
    if len(digits) == 10:
        return '+1' + digits
    if len(digits) == 11 and digits.startswith('1'):
        return '+' + digits
    return None


def send_whatsapp(to_number, message):
    """Returns (success, error_msg)."""
    if not is_configured():
        return False, "WhatsApp is not configured"

    to_e164 = normalize_phone(to_number)
    if not to_e164:
        return False, f"Invalid phone number: {to_number}"

    from_e164 = normalize_phone(Config.TWILIO_WHATSAPP_FROM) or Config.TWILIO_WHATSAPP_FROM

    try:
        client = Client(Config.TWILIO_ACCOUNT_SID, Config.TWILIO_AUTH_TOKEN)
        client.messages.create(body=message, from_=f"whatsapp:{from_e164}", to=f"whatsapp:{to_e164}")
        logger.info(f"[WHATSAPP] Message sent to {to_e164}")
        return True, None
    except TwilioException as e:
        logger.error(f"[WHATSAPP] Send failed to {to_e164}: {e}")
        return False, str(e)
    except requests.exceptions.RequestException as e:
        logger.error(f"[WHATSAPP] Twilio unreachable sending to {to_e164}: {e}")
        return False, f"Connection error: {e}"
