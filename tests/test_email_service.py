"""Tests for enrollment emails sent through Resend."""

from datetime import datetime

import pytest

from app import email_service
from app.email_templates import enrollment_confirmation_template


def test_template_mentions_program_and_start_date():
    mjml = enrollment_confirmation_template("Jordan", "90 Day Reset", "March 02, 2026")

    assert "<mjml>" in mjml
    assert "90 Day Reset" in mjml
    assert "March 02, 2026" in mjml


def test_template_without_start_date_says_live_now():
    mjml = enrollment_confirmation_template("Jordan", "90 Day Reset")
    assert "live now" in mjml


@pytest.mark.asyncio
async def test_send_email_requires_api_key(monkeypatch):
    monkeypatch.setattr(email_service, "RESEND_API_KEY", None)

    with pytest.raises(email_service.EmailNotConfiguredError):
        await email_service.send_email("jordan@example.com", "Hi", "<mjml></mjml>")


@pytest.mark.asyncio
async def test_send_enrollment_confirmation(monkeypatch):
    sent = []
    monkeypatch.setattr(email_service, "RESEND_API_KEY", "re_test")
    monkeypatch.setattr(email_service, "compile_mjml_to_html", lambda mjml: "<html>ok</html>")
    monkeypatch.setattr(email_service.resend.Emails, "send", lambda params: sent.append(params) or {"id": "em_1"})

    response = await email_service.send_enrollment_confirmation(
        to="jordan@example.com",
        user_name="Jordan",
        program_name="90 Day Reset",
        starts_at=datetime(2026, 3, 2),
    )

    assert response == {"id": "em_1"}
    assert sent[0]["to"] == ["jordan@example.com"]
    assert sent[0]["subject"] == "You're enrolled in 90 Day Reset"
    assert sent[0]["html"] == "<html>ok</html>"
