from app.shared.core.logging import pii_redactor


def test_redacts_signature_and_secret_fields():
    event = {
        "event": "webhook_received",
        "x-paystack-signature": "abc123",
        "verif_hash": "flw-hash",
        "webhook_secret": "whsec",
        "provider": "PAYSTACK",
    }

    redacted = pii_redactor(None, "info", event)

    assert redacted["x-paystack-signature"] == "[REDACTED]"
    assert redacted["verif_hash"] == "[REDACTED]"
    assert redacted["webhook_secret"] == "[REDACTED]"
    assert redacted["provider"] == "PAYSTACK"


def test_redacts_emails_in_nested_payloads():
    event = {
        "event": "payment_alert_failed",
        "payload": {"customer": {"email": "payer@example.com"}, "notes": ["ping ops@example.com"]},
    }

    redacted = pii_redactor(None, "warning", event)

    assert redacted["payload"]["customer"]["email"] == "[EMAIL_REDACTED]"
    assert redacted["payload"]["notes"] == ["ping [EMAIL_REDACTED]"]
