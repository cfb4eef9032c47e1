import logging
import httpx
from typing import Optional, List, Dict, Any

from services import config

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"

ROLE_LABELS = {
    "admin": "Admin",
    "team_member": "Team Member",
    "client_viewer": "Client Viewer",
    "developer": "Developer",
}


async def send_email(
    to: str | List[str],
    subject: str,
    text: Optional[str] = None,
    html: Optional[str] = None,
    client: Optional[httpx.AsyncClient] = None
) -> Dict[str, Any]:
    if not config.is_email_enabled():
        raise Exception("Email is not configured (RESEND_API_KEY is not set)")

    payload = {
        "from": config.EMAIL_FROM,
        "to": to if isinstance(to, list) else [to],
        "subject": subject
    }

    if text:
        payload["text"] = text
    if html:
        payload["html"] = html

    headers = {
        "Content-Type": "application/json",
        "Authorization": f"Bearer {config.RESEND_API_KEY}"
    }

    if client is not None:
        response = await client.post(RESEND_API_URL, json=payload, headers=headers, timeout=30.0)
    else:
        async with httpx.AsyncClient() as own_client:
            response = await own_client.post(RESEND_API_URL, json=payload, headers=headers, timeout=30.0)

    if response.status_code >= 300:
        error_data = response.json() if response.content else {}
        raise Exception(error_data.get("message", f"Email send failed: {response.status_code}"))

    return response.json()


async def send_invite_email(
    email: str,
    invite_link: str,
    organization_name: str,
    invited_by_email: str,
    role: str,
    reminder: bool = False,
    client: Optional[httpx.AsyncClient] = None
) -> Dict[str, Any]:
    prefix = "Reminder: " if reminder else ""
    subject = f"{prefix}You've been invited to join {organization_name}"

    text = f"""Hi,

{invited_by_email} has invited you to join {organization_name} as a {ROLE_LABELS.get(role, role)}.

Accept the invitation here:
{invite_link}

This invitation expires in {config.INVITE_EXPIRY_DAYS} days. If you weren't expecting it, you can ignore this email.
"""

    logger.info("Sending invite email to %s for %s", email, organization_name)
    return await send_email(to=email, subject=subject, text=text, client=client)
