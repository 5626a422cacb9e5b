import logging
from contextlib import closing
from typing import Any, Dict, Iterator, Optional
import httpx
from cohortflow.core.config import Settings, settings as default_settings
from cohortflow.core.errors import NotificationDeliveryFailure

logger = logging.getLogger(__name__)

class Notifier:
    """Fire-and-forget delivery of templated messages to one recipient."""

    def send(self, recipient: str, template_key: str, context: Dict[str, Any]) -> None:
        raise NotImplementedError

    def close(self) -> None:
        pass

class LogNotifier(Notifier):
    def send(self, recipient: str, template_key: str, context: Dict[str, Any]) -> None:
        logger.info("Notification %s -> %s %s", template_key, recipient, context)

class WebhookNotifier(Notifier):
    def __init__(self, url: str, timeout: float = 5.0, client: Optional[httpx.Client] = None):
        self.url = url
        self._owns_client = client is None
        self.client = client or httpx.Client(timeout=timeout)

    def send(self, recipient: str, template_key: str, context: Dict[str, Any]) -> None:
        payload = {"recipient": recipient, "template": template_key, "context": context}
        try:
            r = self.client.post(self.url, json=payload)
            r.raise_for_status()
        except httpx.HTTPError as e:
            raise NotificationDeliveryFailure(f"Delivery of {template_key} to {recipient} failed: {e}", recipient=recipient) from e

    def close(self) -> None:
        # injected clients belong to the caller
        if self._owns_client:
            self.client.close()

def build_notifier(cfg: Settings = default_settings) -> Notifier:
    if cfg.NOTIFY_WEBHOOK_URL:
        return WebhookNotifier(cfg.NOTIFY_WEBHOOK_URL, timeout=cfg.NOTIFY_TIMEOUT_SECONDS)
    return LogNotifier()

def notify_safely(notifier: Optional[Notifier], recipient: str, template_key: str, context: Dict[str, Any]) -> bool:
    """Send one message; failures are logged and reported as False.

    Without a notifier a configured one is built for this message and closed again.
    """
    if notifier is None:
        with closing(build_notifier()) as own:
            return notify_safely(own, recipient, template_key, context)
    try:
        notifier.send(recipient, template_key, context)
        return True
    except NotificationDeliveryFailure:
        logger.exception("Failed to send %s to %s", template_key, recipient)
        return False

def get_notifier() -> Iterator[Notifier]:
    """FastAPI dependency; overridden in tests."""
    with closing(build_notifier()) as notifier:
        yield notifier
