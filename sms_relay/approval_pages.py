"""HTML pages for the browser approval flow."""

from html import escape
from typing import Optional

from sms_relay import approval

_STYLE = """
body{font-family:-apple-system,'Segoe UI',Roboto,sans-serif;background:#1a1a2e;color:#e0e0e0;padding:16px}
.container{max-width:600px;margin:0 auto}
.label{font-size:0.8rem;text-transform:uppercase;color:#888;margin-bottom:4px}
.value{margin-bottom:16px}
blockquote{border-left:3px solid #444;padding:8px 12px;margin:8px 0 16px;white-space:pre-wrap}
textarea{width:100%;min-height:140px;padding:12px;font-size:1rem}
.actions{display:flex;flex-direction:column;gap:10px;margin-top:20px}
button{border:none;border-radius:8px;padding:14px 20px;font-size:1rem;color:#fff}
.btn-approve{background:#4CAF50}.btn-edit{background:#2196F3}.btn-reject{background:#f44336}
.status-box{text-align:center;padding:40px 20px;border-radius:12px;margin-top:20px}
.status-ok{background:#1b5e20}.status-warn{background:#e65100}.status-err{background:#b71c1c}
.context-box{background:#16213e;border-radius:8px;padding:12px;margin-bottom:16px;white-space:pre-wrap}
"""

_ALREADY_LABELS = {
    "sent": "Already Sent",
    "approved": "Already Approved",
    "rejected": "Already Rejected",
    "failed": "Already Processed",
}


def render_page(title: str, body_html: str) -> str:
    return (
        '<!DOCTYPE html><html lang="en"><head><meta charset="utf-8">'
        '<meta name="viewport" content="width=device-width, initial-scale=1">'
        f"<title>{escape(title)}</title><style>{_STYLE}</style></head>"
        f'<body><div class="container">{body_html}</div></body></html>'
    )


def status_page(title: str, heading: str, text: str, css_class: str = "status-ok") -> str:
    return render_page(
        title,
        f'<div class="status-box {css_class}"><h1>{escape(heading)}</h1><p>{escape(text)}</p></div>',
    )


def not_found_page() -> str:
    return status_page(
        "Not Found",
        "Message Not Found",
        "This approval link is invalid or the message has been deleted.",
        "status-warn",
    )


def already_processed_page(status: Optional[str]) -> str:
    label = _ALREADY_LABELS.get(status or "", "Already Processed")
    return status_page(label, label, f"This message has already been {status or 'processed'}. No action taken.", "status-warn")


def approval_form_page(
    *,
    phone_number: str,
    client_name: Optional[str],
    incoming_body: Optional[str],
    draft_body: str,
    calendar_context: Optional[str] = None,
    action_summary: Optional[str] = None,
) -> str:
    sender = escape(phone_number) + (f" &middot; {escape(client_name)}" if client_name else "")
    parts = [
        "<h1>SMS Approval</h1>",
        f'<div class="label">From</div><div class="value">{sender}</div>',
    ]
    if incoming_body:
        parts.append(f'<div class="label">Their Message</div><blockquote>{escape(incoming_body)}</blockquote>')
    if calendar_context:
        parts.append(f'<div class="context-box"><div class="label">Calendar</div>{escape(calendar_context)}</div>')
    if action_summary:
        parts.append(f'<div class="context-box"><div class="label">Pending Action</div>{escape(action_summary)}</div>')
    parts.append(
        '<form method="POST" action="">'
        '<div class="label">Draft Reply</div>'
        f'<textarea name="edited_body">{escape(draft_body)}</textarea>'
        '<div class="actions">'
        '<button type="submit" name="action" value="approve" class="btn-approve">Approve &amp; Send</button>'
        '<button type="submit" name="action" value="edit" class="btn-edit">Send Edited Text</button>'
        '<button type="submit" name="action" value="reject" class="btn-reject">Reject</button>'
        "</div></form>"
    )
    return render_page("SMS Approval", "".join(parts))


def outcome_page(outcome: approval.ApprovalOutcome) -> tuple[int, str]:
    """HTTP status code and page for the result of a web decision."""
    if outcome.status == approval.NOT_FOUND:
        return 404, not_found_page()
    if outcome.status == approval.ALREADY_PROCESSED:
        return 200, already_processed_page(outcome.current_status)
    if outcome.status == approval.INVALID:
        return 400, status_page("Error", "Invalid Request", outcome.error or "Unrecognized form action.", "status-err")
    if outcome.status == approval.REJECTED:
        return 200, status_page(
            "Rejected", "Message Rejected", "The draft was rejected and will not be sent.", "status-warn"
        )
    if outcome.status == approval.ACTION_FAILED:
        return 200, status_page("Action Failed", "Action Failed", f"{outcome.error} The SMS was not sent.", "status-err")
    if outcome.status == approval.SEND_FAILED:
        return 200, status_page("Send Failed", "Send Failed", f"Failed to send: {outcome.error}", "status-err")
    return 200, status_page("Sent", "Message Sent", f"SMS sent to {outcome.phone_number or ''}.")
