"""
Jinja2 templates for notifications and reasoning prompts.

Notification templates render to text whose first line is
"Title: <title>" followed by the body, the same convention as the
"Subject:" line of an email template:

    Title: Work order assigned

    Your maintenance request "{{ title }}" has been assigned and is being handled.

Prompt templates render to plain text.

Templates are rendered with StrictUndefined, so a missing variable fails
loudly instead of producing an empty string in a tenant-facing message.
"""

from typing import Any

from jinja2 import Environment, StrictUndefined, select_autoescape

from propagent.utils import format_money

_env = Environment(
    autoescape=select_autoescape(["html", "htm"], default_for_string=False),
    undefined=StrictUndefined,
    trim_blocks=True,
    lstrip_blocks=True,
)
_env.filters["money"] = format_money


# =============================================================================
# NOTIFICATIONS
# =============================================================================

NOTIFICATION_TEMPLATES: dict[str, str] = {
    # Maintenance
    "wo_assigned_tenant": (
        "Title: Work order assigned\n\n"
        'Your maintenance request "{{ title }}" has been assigned and is being handled.'
    ),
    "wo_assigned_manager": (
        "Title: Agent: Work order auto-assigned\n\n"
        'WO "{{ title }}" was automatically assigned to a vendor.'
    ),
    # Tenant comms
    "legal_block_manager": (
        "Title: {% if is_harassment %}URGENT: Tenant message flagged for harassment"
        "{% else %}URGENT: Tenant message contains legal content{% endif %}\n\n"
        'Thread "{{ subject }}" requires immediate review. '
        "No automated response was sent. Check Agent Exceptions."
    ),
    "draft_review_manager": (
        "Title: Draft reply awaiting your review, {{ subject }}\n\n"
        "Intent: {{ intent }}. Draft: {{ draft[:120] }}…"
    ),
    "auto_reply_tenant": (
        "Title: New message from your property management team\n\n"
        "{{ reply[:100] }}"
    ),
    "auto_reply_manager": (
        "Title: Agent: Auto-reply sent, {{ subject }}\n\n"
        "Intent: {{ intent }}. Reply sent to tenant.{% if work_order_created %} Work order created.{% endif %}"
    ),
    # Compliance
    "compliance_block_manager": (
        "Title: {% if is_overdue %}URGENT: Compliance item overdue, {{ title }}"
        "{% else %}Compliance deadline critical: {{ title }}{% endif %}\n\n"
        "{{ property_name }} · {{ category | replace('_', ' ') }} · Due: {{ due_date }}"
    ),
    "compliance_approval_manager": (
        "Title: Compliance item needs action: {{ title }}\n\n"
        "{{ property_name }} · {% if days_until_due < 0 %}Overdue{% else %}Due in {{ days_until_due }}d{% endif %}"
        " · Auto-WO creation disabled by policy"
    ),
    "compliance_wo_created_manager": (
        "Title: Agent: Compliance WO created, {{ title }}\n\n"
        "{{ property_name }} · WO created ({{ priority }} priority) · Due: {{ due_date }}"
    ),
    # SLA breach
    "sla_breach_manager": (
        "Title: SLA breach: {{ title }}\n\n"
        "{{ property_name }} · {{ priority }} priority · {{ hours_breached }}h past SLA deadline"
        " · Status: {{ status }}"
    ),
    "sla_breach_tenant": (
        "Title: Update on your request: {{ title }}\n\n"
        "{% if reassigned %}We're expediting your request and have assigned a new vendor. "
        "Thank you for your patience."
        "{% else %}We're aware your request is taking longer than expected "
        "and our team is working to resolve it.{% endif %}"
    ),
    # Action executor
    "manager_message_tenant": (
        "Title: New message from your manager\n\n"
        "{{ body[:120] }}"
    ),
    "renewal_offer_tenant": (
        "Title: Renewal offer from your manager\n\n"
        "You have a new lease renewal offer: {{ term_months }} months at ${{ offered_rent | money }}/mo."
    ),
    # Agent loop
    "actions_queued_manager": (
        "Title: Agent queued {{ count }} action{% if count > 1 %}s{% endif %} for your review\n\n"
        "{{ count }} proposed action{% if count > 1 %}s{% endif %} need{% if count == 1 %}s{% endif %}"
        " your approval in the Agent Inbox."
    ),
}


# =============================================================================
# PROMPTS
# =============================================================================

PROMPT_TEMPLATES: dict[str, str] = {
    "classify_system": (
        "You are a property management AI. Classify the tenant message into exactly one of these intents:\n"
        "{{ intents | join(', ') }}\n\n"
        "Also check if the message contains legal keywords: {{ keywords | join(', ') }}.\n\n"
        'Respond ONLY with valid JSON: { "intent": "INTENT_HERE", "hasLegalKeywords": true/false }'
    ),
    "classify_user": "Subject: {{ subject }}\n\nMessage: {{ body }}",
    "draft_review_system": (
        "You are a property manager assistant. Draft a professional, empathetic reply to the tenant message below.\n"
        "Intent detected: {{ intent }}. Keep it under 150 words. "
        "Do not make specific commitments about timelines unless you are certain."
    ),
    "draft_review_user": (
        "Tenant message (subject: {{ subject }}):\n{{ body }}\n\n"
        "Draft a reply for the manager to review and send."
    ),
    "auto_reply_system": (
        "You are a professional property management assistant. Write a concise, empathetic reply to the tenant.\n"
        "Intent: {{ intent }}\n"
        "{{ intent_prompt }}\n"
        "{% if context_block %}\nContext:\n{{ context_block }}\n{% endif %}"
        "{% if work_order_id %}\nA work order has already been created (ID: {{ work_order_id }}). "
        "Tell the tenant their request has been logged and will be addressed.\n{% endif %}"
        "Keep the reply under 150 words. Be helpful and professional."
    ),
    "auto_reply_user": "Tenant message (subject: {{ subject }}):\n{{ body }}",
    "tenant_message_draft": (
        "Write a {{ tone }} message to tenant {{ tenant_name }} about: {{ context }}. "
        "Keep it under 150 words. Return only the message body."
    ),
    "agent_system": (
        "You are an autonomous AI property management agent working on behalf of a property manager "
        "(id: {{ manager_id }}).\n"
        "Review the portfolio snapshot and propose relevant actions to help the manager.\n\n"
        "{{ snapshot }}\n\n"
        "Tone preference: {{ tone }}.\n\n"
        "Use your tools to:\n"
        "1. Propose specific actions (propose_action) for unassigned work orders, unanswered tenant messages, "
        "and expiring leases without renewal offers.\n"
        "2. Use get_best_vendor before proposing ASSIGN_VENDOR or SEND_BID_REQUEST actions.\n"
        "3. Use draft_message to compose professional message bodies.\n"
        "4. Use get_submitted_bids when deciding whether to propose ACCEPT_BID.\n\n"
        "Payload requirements per action type:\n"
        "- SEND_RENEWAL_OFFER: must include leaseId, offeredRent (number, use current rent from snapshot), "
        "termMonths (number, default 12)\n"
        "- ASSIGN_VENDOR: must include workOrderId, vendorId\n"
        "- SEND_BID_REQUEST: must include workOrderId, vendorIds (array of strings)\n"
        "- ACCEPT_BID: must include bidId\n"
        "- SEND_MESSAGE: must include body; either threadId (existing) or propertyId + tenantId + subject "
        "(new thread)\n"
        "- CREATE_WORK_ORDER: must include propertyId, title, description\n"
        "- CLOSE_THREAD: must include threadId\n\n"
        "Be specific and actionable. Only propose actions that are clearly needed based on the data. "
        "Do not propose more than {{ max_actions }} actions total."
    ),
    "agent_user": (
        "Review the portfolio and propose actions where needed. "
        "Use your tools to gather info and propose actions."
    ),
    "tool_protocol": (
        "{{ system_prompt }}\n\n"
        "## Tools\n"
        "{% for tool in tools %}\n"
        "- {{ tool.name }}: {{ tool.description }} Input schema: {{ tool.input_schema | tojson }}\n"
        "{% endfor %}\n"
        "Respond ONLY with valid JSON of the form\n"
        '{"text": "...", "tool_calls": [{"id": "call-1", "name": "TOOL_NAME", "input": {...}}]}\n'
        "Use an empty tool_calls list when you are done."
    ),
    "tool_transcript": (
        "{% for message in messages %}\n"
        "[{{ message.role }}]\n{{ message.content }}\n\n"
        "{% endfor %}"
    ),
}


def render_prompt(name: str, **variables: Any) -> str:
    """
    Render a prompt template.

    Raises:
        KeyError: If the template name is unknown
        jinja2.UndefinedError: If a template variable is missing
    """
    template = _env.from_string(PROMPT_TEMPLATES[name])
    return template.render(**variables).strip()


def render_notification(name: str, **variables: Any) -> tuple[str, str]:
    """
    Render a notification template into (title, body).

    Raises:
        KeyError: If the template name is unknown
        jinja2.UndefinedError: If a template variable is missing
    """
    template = _env.from_string(NOTIFICATION_TEMPLATES[name])
    return _parse_template_output(template.render(**variables))


def _parse_template_output(content: str) -> tuple[str, str]:
    """Split rendered text into its "Title:" line and body."""
    lines = content.strip().split("\n", 1)
    if lines[0].startswith("Title:"):
        title = lines[0][6:].strip()
        body = lines[1].strip() if len(lines) > 1 else ""
    else:
        title = ""
        body = content.strip()
    return title, body
