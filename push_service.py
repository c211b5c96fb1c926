# =================================================================
#   Scout Troop Manager - Web Push Service (VAPID)
# =================================================================

import json
import logging

import requests
from pywebpush import webpush, WebPushException

from config import Config

logger = logging.getLogger(__name__)


def is_configured():
    return bool(Config.VAPID_PUBLIC_KEY and Config.VAPID_PRIVATE_KEY)


def build_notification_payload(title, body):
    return {
        'title': title,
        'body': body,
        'options': {
            'body': body,
            'tag': 'renotify',
            'renotify': True,
            'requireInteraction': True,
        },
    }


def send_push(subscription, payload):
    """
    Deliver one push message.
    subscription: row/dict with endpoint, p256dh and auth.
    Returns (success, error_msg, expired) where expired means the
    endpoint is gone (404/410) and should be deleted.
    """
    if not is_configured():
        return False, "VAPID keys are not configured", False

    subscription_info = {
        'endpoint': subscription['endpoint'],
        'keys': {'p256dh': subscription['p256dh'], 'auth': subscription['auth']},
    }

    try:
        webpush(
            subscription_info=subscription_info,
            data=json.dumps(payload),
            vapid_private_key=Config.VAPID_PRIVATE_KEY,
            vapid_claims={'sub': f"mailto:{Config.VAPID_CLAIM_EMAIL}"},
        )
        return True, None, False
    except WebPushException as e:
        status = getattr(e.response, 'status_code', None) if e.response is not None else None
        logger.warning(f"[PUSH] Delivery failed ({status}) to {subscription['endpoint'][:60]}: {e}")
        return False, str(e), status in (404, 410)
    except requests.exceptions.RequestException as e:
        logger.warning(f"[PUSH] Push service unreachable for {subscription['endpoint'][:60]}: {e}")
        return False, f"Connection error: {e}", False
