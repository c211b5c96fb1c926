# =================================================================
#   Scout Troop Manager - Email Service
#   SMTP delivery plus the HTML templates for verification codes,
#   password resets and announcements
# =================================================================

import smtplib
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
import html
import logging

from config import Config

logger = logging.getLogger(__name__)


def send_email(to_email, subject, html_content):
    """
    Core email sending function - handles all SMTP logic
    Returns: (success: bool, error_msg: str or None)
    """
    if not to_email or '@' not in to_email:
        logger.warning(f"Invalid email address: {to_email}")
        return False, "Invalid email address"

    if Config.EMAIL_TEST_MODE:
        logger.info(f"[EMAIL] Test mode - To: {to_email} - Subject: {subject}")
        return True, None

    if not Config.SENDER_EMAIL:
        return False, "SMTP sender is not configured"

    try:
        msg = MIMEMultipart('alternative')
        msg['Subject'] = subject
        msg['From'] = f"{Config.SENDER_NAME} <{Config.SENDER_EMAIL}>"
        msg['To'] = to_email
        msg.attach(MIMEText(html_content, 'html'))

        server = smtplib.SMTP(Config.SMTP_SERVER, Config.SMTP_PORT, timeout=10)
        server.starttls()
        server.login(Config.SENDER_EMAIL, Config.SENDER_PASSWORD)
        server.send_message(msg)
        server.quit()

        logger.info(f"Email sent successfully to {to_email}")
        return True, None

    except smtplib.SMTPAuthenticationError:
        error_msg = "SMTP authentication failed - check the sender password"
        logger.error(f"Email failed - {error_msg}")
        return False, error_msg

    except smtplib.SMTPException as e:
        error_msg = f"SMTP error: {str(e)}"
        logger.error(f"Email failed to {to_email}: {error_msg}")
        return False, error_msg

    except OSError as e:
        error_msg = f"Connection error: {str(e)}"
        logger.error(f"Email failed to {to_email}: {error_msg}")
        return False, error_msg


def _wrap(title, accent, body_html):
    return f"""
    <!DOCTYPE html>
    <html>
    <head>
        <style>
            body {{ font-family: Arial, sans-serif; background: #f5f5f5; margin: 0; padding: 20px; }}
            .container {{ background: white; max-width: 600px; margin: 0 auto; border-radius: 8px; overflow: hidden; }}
            .header {{ background: {accent}; color: white; padding: 24px; text-align: center; }}
            .header h1 {{ margin: 0; font-size: 22px; }}
            .content {{ padding: 30px; line-height: 1.6; color: #333; }}
            .code {{ font-size: 32px; font-weight: bold; letter-spacing: 8px; color: {accent}; text-align: center; margin: 24px 0; font-family: 'Courier New', monospace; }}
            .footer {{ background: #f8f9fa; padding: 16px; text-align: center; color: #6c757d; font-size: 12px; }}
        </style>
    </head>
    <body>
        <div class="container">
            <div class="header"><h1>{title}</h1></div>
            <div class="content">{body_html}</div>
            <div class="footer">This is an automated message from {html.escape(Config.SENDER_NAME)}. Please do not reply.</div>
        </div>
    </body>
    </html>
    """


# =================================================================
#   TWO-FACTOR CODE
# =================================================================

def send_two_factor_code(to_email, code, user_name=''):
    name = html.escape((user_name or '').strip()) or 'there'
    body = f"""
        <p>Hello {name},</p>
        <p>Please use the following code to complete your login:</p>
        <div class="code">{code}</div>
        <p>This code will expire in {Config.TWO_FACTOR_CODE_TTL_MINUTES} minutes.</p>
        <p>If you didn't request this code, please ignore this email and make sure your account is secure.</p>
    """
    return send_email(to_email, "Your verification code", _wrap("Verification code", "#007bff", body))


# =================================================================
#   PASSWORD RESET
# =================================================================

def send_password_reset(to_email, reset_token):
    link = f"{Config.APP_BASE_URL}/reset-password?token={reset_token}"
    body = f"""
        <p>A password reset was requested for your account.</p>
        <p><a href="{html.escape(link)}">Choose a new password</a></p>
        <p>The link is valid for {Config.PASSWORD_RESET_TTL_MINUTES} minutes. If you did not ask for it, ignore this email.</p>
    """
    return send_email(to_email, "Password reset", _wrap("Password reset", "#6f42c1", body))


# =================================================================
#   ANNOUNCEMENT
# =================================================================

def send_announcement_email(to_email, subject, message):
    paragraphs = ''.join(
        f"<p>{html.escape(line)}</p>" for line in message.split('\n') if line.strip()
    )
    return send_email(to_email, subject, _wrap(html.escape(subject), "#28a745", paragraphs))
