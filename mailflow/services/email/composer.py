"""
Final message composition: layout, unsubscribe footer, sender identity.

The same rules apply to immediate sends and to sends executed later by the
task scheduler.
"""

from typing import NamedTuple
from uuid import UUID

from mailflow.config import settings
from mailflow.models.domain.automation_domain import (
    Campaign,
    Contact,
    OutboundEmail,
    Project,
    Template,
    TemplateStyle,
    TemplateType,
)
from mailflow.services.email.templating import contact_variables, render_template

PROSE_LAYOUT = """<!doctype html>
<html>
  <head>
    <meta charset="utf-8">
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <style>
      .prose {{ color: #4a5568; max-width: 600px; font-size: 16px; line-height: 1.75;
        font-family: 'Inter', -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, Helvetica, Arial, sans-serif; }}
      .prose a {{ color: #1a202c; text-decoration: underline; }}
      .prose strong {{ color: #1a202c; font-weight: 600; }}
      .prose p {{ margin-top: 20px; margin-bottom: 20px; }}
      .prose img {{ max-width: 100%; height: auto; display: block; }}
    </style>
  </head>
  <body>
    <table align="center" width="100%" style="max-width: 600px;" role="presentation">
      <tr class="prose">
        <td style="padding:10px 25px;word-break:break-word">
{content}
        </td>
      </tr>
    </table>
{footer}
  </body>
</html>"""

UNSUBSCRIBE_FOOTER = """    <table align="center" width="100%" style="max-width: 480px; margin-left: auto; margin-right: auto;" role="presentation">
      <tr>
        <td>
          <hr style="border: none; border-top: 1px solid #eaeaea; margin-top: 12px; margin-bottom: 12px;">
          <p style="font-size: 12px; line-height: 24px; text-align: center; color: rgb(64, 64, 64);">
            You received this email because you agreed to receive emails from {project_name}. If you no longer wish to receive emails like this, please
            <a href="{unsubscribe_url}">update your preferences</a>.
          </p>
        </td>
      </tr>
    </table>"""


class SenderIdentity(NamedTuple):
    email: str
    name: str


def unsubscribe_url(contact_id: UUID | str) -> str:
    return f"{settings.unsubscribe_base_url()}/unsubscribe/{contact_id}"


def compile_html(
    content: str,
    *,
    unsubscribe: bool,
    contact_id: UUID | str,
    project_name: str,
    is_html: bool,
) -> str:
    """Wrap rendered content in the layout and append the footer when asked."""
    footer = (
        UNSUBSCRIBE_FOOTER.format(
            project_name=project_name, unsubscribe_url=unsubscribe_url(contact_id)
        )
        if unsubscribe
        else ""
    )

    if is_html:
        return f"{content}\n\n{footer}" if footer else content

    return PROSE_LAYOUT.format(content=content, footer=footer)


def resolve_sender(
    project: Project, sender_email: str | None = None, sender_name: str | None = None
) -> SenderIdentity:
    """Unverified projects always send from the platform fallback address."""
    if project.verified and project.email:
        email = sender_email or project.email
    else:
        email = settings.FALLBACK_SENDER_EMAIL

    name = sender_name or project.from_name or project.name
    return SenderIdentity(email=email, name=name)


def compose_automation_email(
    project: Project, contact: Contact, template: Template, automation_id: UUID
) -> OutboundEmail:
    rendered = render_template(
        template.subject,
        template.body,
        contact_variables(contact.id, contact.email, contact.metadata),
    )
    sender = resolve_sender(project, template.sender_email, template.sender_name)

    html = compile_html(
        rendered.body,
        unsubscribe=template.type == TemplateType.MARKETING,
        contact_id=contact.id,
        project_name=project.name,
        is_html=template.style == TemplateStyle.HTML,
    )

    return OutboundEmail(
        sender_email=sender.email,
        sender_name=sender.name,
        to=contact.email,
        subject=rendered.subject,
        html=html,
        contact_id=contact.id,
        automation_id=automation_id,
    )


def compose_campaign_email(project: Project, contact: Contact, campaign: Campaign) -> OutboundEmail:
    """Campaigns are always marketing mail and always carry the footer."""
    rendered = render_template(
        campaign.subject,
        campaign.body,
        contact_variables(contact.id, contact.email, contact.metadata),
    )
    sender = resolve_sender(project, campaign.sender_email, campaign.sender_name)

    html = compile_html(
        rendered.body,
        unsubscribe=True,
        contact_id=contact.id,
        project_name=project.name,
        is_html=campaign.style == TemplateStyle.HTML,
    )

    return OutboundEmail(
        sender_email=sender.email,
        sender_name=sender.name,
        to=contact.email,
        subject=rendered.subject,
        html=html,
        contact_id=contact.id,
        campaign_id=campaign.id,
    )
