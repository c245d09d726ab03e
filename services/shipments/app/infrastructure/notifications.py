from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Dict, Optional

import httpx

from app.core_settings import Settings, get_settings
from shared.core import get_logger

logger = get_logger(__name__)


class StatusNotifier:
    """Best-effort owner notifications, sent off the request path.

    Every accepted transition produces a status update; statuses listed in
    ``INVOICE_STATUSES`` also trigger an invoice. Failures are logged only.
    """

    def __init__(self, settings: Optional[Settings] = None, transport: Optional[httpx.BaseTransport] = None):
        self.settings = settings or get_settings()
        self._transport = transport
        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="notify")

    def notify(self, shipment: Dict[str, Any]) -> Optional[Future]:
        if not self.settings.NOTIFICATION_URL:
            logger.debug(f"Notifications disabled, skipping {shipment.get('id')}")
            return None
        return self._executor.submit(self._send, shipment)

    def _send(self, shipment: Dict[str, Any]):
        base_url = self.settings.NOTIFICATION_URL.rstrip("/")
        try:
            with httpx.Client(timeout=self.settings.NOTIFICATION_TIMEOUT_SECONDS, transport=self._transport) as client:
                client.post(f"{base_url}/status-update", json=shipment).raise_for_status()
                if shipment.get("status") in self.settings.INVOICE_STATUSES:
                    client.post(f"{base_url}/invoice", json=shipment).raise_for_status()
        except Exception as e:
            logger.warning(
                f"Notification for shipment {shipment.get('id')} failed: {e}",
                extra={"extra_fields": {"shipment_id": shipment.get("id"), "status": shipment.get("status")}},
            )

    def shutdown(self):
        self._executor.shutdown(wait=False)


_notifier: Optional[StatusNotifier] = None


def get_notifier() -> StatusNotifier:
    global _notifier
    if _notifier is None:
        _notifier = StatusNotifier()
    return _notifier


def set_notifier(notifier: Optional[StatusNotifier]):
    global _notifier
    _notifier = notifier
