import logging

import httpx

from app.core_settings import Settings
from app.infrastructure.notifications import StatusNotifier


class NotificationApi:
    def __init__(self, status_code=200):
        self.status_code = status_code
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json={"ok": self.status_code < 400})

    def paths(self):
        return [r.url.path for r in self.requests]


def _notifier(api, **overrides):
    values = dict(NOTIFICATION_URL="https://notify.test/hooks/")
    values.update(overrides)
    return StatusNotifier(Settings(**values), transport=httpx.MockTransport(api))


def _shipment(status):
    return {"id": "s1", "status": status, "version": 2}


def test_status_update_is_always_sent():
    api = NotificationApi()
    notifier = _notifier(api)

    notifier.notify(_shipment("PICKED_UP")).result(timeout=5)

    assert api.paths() == ["/hooks/status-update"]
    assert api.requests[0].method == "POST"
    notifier.shutdown()


def test_invoice_follows_invoice_statuses():
    api = NotificationApi()
    notifier = _notifier(api)

    notifier.notify(_shipment("BOOKED")).result(timeout=5)
    notifier.notify(_shipment("QUALITY_CHECKED")).result(timeout=5)
    notifier.notify(_shipment("DELIVERED")).result(timeout=5)

    assert api.paths() == [
        "/hooks/status-update",
        "/hooks/invoice",
        "/hooks/status-update",
        "/hooks/status-update",
        "/hooks/invoice",
    ]
    notifier.shutdown()


def test_failed_notification_is_logged_not_raised(caplog):
    api = NotificationApi(status_code=500)
    notifier = _notifier(api)

    with caplog.at_level(logging.WARNING, logger="app.infrastructure.notifications"):
        assert notifier.notify(_shipment("DELIVERED")).result(timeout=5) is None

    # the invoice is not attempted once the status update fails
    assert api.paths() == ["/hooks/status-update"]
    assert any("Notification for shipment s1 failed" in r.getMessage() for r in caplog.records)
    notifier.shutdown()


def test_notifications_are_skipped_without_a_url():
    api = NotificationApi()
    notifier = StatusNotifier(Settings(NOTIFICATION_URL=None), transport=httpx.MockTransport(api))

    assert notifier.notify(_shipment("BOOKED")) is None
    assert api.requests == []
    notifier.shutdown()
