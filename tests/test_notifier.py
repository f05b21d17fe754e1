import logging

import notifier as notifier_module
from notifier import EmailNotifier, status_message

LOGGER = logging.getLogger("test.notifier")


def make_notifier(api_key="re_test_key"):
    return EmailNotifier(api_key, "orders@aynext.com", LOGGER, client_url="https://shop.example.com/")


def capture_sends(monkeypatch, response=None, error=None):
    sent = []

    def fake_send(payload):
        sent.append(payload)
        if error:
            raise error
        return response if response is not None else {"id": f"email-{len(sent)}"}

    monkeypatch.setattr(notifier_module.resend.Emails, "send", fake_send)
    return sent


def test_missing_api_key_skips_sending(monkeypatch):
    sent = capture_sends(monkeypatch)

    result = make_notifier(api_key="").send_welcome({"email": "amira@example.com"})

    assert result == (False, "Email service is not configured.")
    assert sent == []


def test_welcome_email_payload(monkeypatch):
    sent = capture_sends(monkeypatch)

    result = make_notifier().send_welcome({"email": "amira@example.com", "name": "Amira", "surname": "Ben Salah"})

    assert result == (True, None)
    assert sent[0]["to"] == ["amira@example.com"]
    assert sent[0]["from"] == "AYNEXT <orders@aynext.com>"
    assert "https://shop.example.com/products" in sent[0]["text"]


def test_provider_exception_is_returned_not_raised(monkeypatch):
    capture_sends(monkeypatch, error=RuntimeError("provider down"))

    sent, error = make_notifier().send_order_status(
        {"email": "amira@example.com", "name": "Amira"},
        {"order_number": "ORD-1", "total": 12, "items": []},
        "shipped",
    )

    assert sent is False
    assert "provider down" in error


def test_order_status_email_lists_items_and_tracking(monkeypatch):
    sent = capture_sends(monkeypatch)
    order = {
        "order_number": "ORD-ABC",
        "total": 65.9,
        "tracking_number": "TN-42",
        "items": [{"name": "Classic Hoodie", "quantity": 2, "line_total": 60}],
    }

    result = make_notifier().send_order_status({"email": "amira@example.com", "name": "Amira"}, order, "shipped")

    assert result == (True, None)
    assert sent[0]["subject"] == "Your order has shipped - Order #ORD-ABC"
    assert "2x Classic Hoodie - 60.00 TND" in sent[0]["text"]
    assert "Tracking number: TN-42" in sent[0]["text"]


def test_new_product_emails_report_partial_failure(monkeypatch):
    calls = []

    def flaky_send(payload):
        calls.append(payload)
        if payload["to"] == ["broken@example.com"]:
            raise RuntimeError("mailbox unavailable")
        return {"id": "ok"}

    monkeypatch.setattr(notifier_module.resend.Emails, "send", flaky_send)

    sent, error = make_notifier().send_new_product(
        [{"email": "a@example.com", "name": "A"}, {"email": "broken@example.com"}, {"name": "no email"}],
        {"_id": "p1", "name": "Classic Hoodie", "price": 50},
    )

    assert len(calls) == 2
    assert sent is False
    assert error == "1 of 2 emails failed."


def test_unknown_status_has_generic_message():
    assert status_message("lost")[0] == "Order update"
