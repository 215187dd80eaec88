"""
MJML Email Templates
Templates for funnel and enrollment notifications
"""

from typing import Optional

from .config import FRONTEND_URL

THEME = {
    "primary": "#6366f1",
    "background": "#f8fafc",
    "text_primary": "#0f172a",
    "text_secondary": "#334155",
    "text_muted": "#64748b",
    "border": "#e2e8f0",
}


def get_base_template(
    title: str,
    preview_text: str,
    content_sections: str,
    cta_url: Optional[str] = None,
    cta_label: Optional[str] = None,
) -> str:
    """Base MJML template wrapper for all emails"""

    cta_section = ""
    if cta_url and cta_label:
        cta_section = f"""
        <mj-section padding="20px 0">
          <mj-column>
            <mj-button
              href="{cta_url}"
              background-color="{THEME['primary']}"
              color="#ffffff"
              font-weight="600"
              border-radius="8px"
              padding="18px 40px"
              font-size="16px">
              {cta_label}
            </mj-button>
          </mj-column>
        </mj-section>
        """

    return f"""
    <mjml>
      <mj-head>
        <mj-title>{title}</mj-title>
        <mj-preview>{preview_text}</mj-preview>
        <mj-attributes>
          <mj-all font-family="-apple-system, BlinkMacSystemFont, 'Segoe UI', Arial, sans-serif" />
          <mj-text font-size="16px" line-height="1.6" color="{THEME['text_secondary']}" />
        </mj-attributes>
      </mj-head>
      <mj-body background-color="{THEME['background']}">
        <mj-section background-color="#ffffff" padding="40px 40px 48px 40px">
          <mj-column>
            <mj-text font-size="24px" font-weight="600" color="{THEME['text_primary']}" padding="0 0 16px 0">
              {title}
            </mj-text>
            {content_sections}
          </mj-column>
        </mj-section>

        {cta_section}

        <mj-section padding="32px 20px">
          <mj-column>
            <mj-text align="center" font-size="13px" color="#94a3b8" padding="0">
              You're receiving this because you joined a program on CoachFlow.
            </mj-text>
          </mj-column>
        </mj-section>
      </mj-body>
    </mjml>
    """


def enrollment_confirmation_template(
    user_name: str, program_name: str, starts_at: Optional[str] = None
) -> str:
    """Sent when a funnel finishes and the user is enrolled"""
    start_line = (
        f"Your cohort starts on <strong>{starts_at}</strong>. We'll see you there."
        if starts_at
        else "Your program is live now. Jump in whenever you're ready."
    )
    content = f"""
    <mj-text>
      Hi {user_name},
    </mj-text>

    <mj-text>
      You're enrolled in <strong>{program_name}</strong>.
    </mj-text>

    <mj-text color="{THEME['text_muted']}">
      {start_line}
    </mj-text>
    """

    return get_base_template(
        title=f"Welcome to {program_name}!",
        preview_text=f"You're enrolled in {program_name}",
        content_sections=content,
        cta_url=f"{FRONTEND_URL}/",
        cta_label="Open your dashboard",
    )
