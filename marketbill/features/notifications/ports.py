"""
Notification and analytics ports.

Secondary effects of the billing engine (user notifications, analytics
records) go through these ports. Delivery is best-effort: a failing port is
logged and swallowed, never propagated into the primary state change.

The defaults only log. Callers wire real adapters with set_notifier() /
set_analytics() at startup; tests pass recording fakes directly.
"""
import logging
from typing import Protocol, Dict, Any, Optional, Callable

from marketbill.core.logging import log_event


logger = logging.getLogger("marketbill.notifications")


class NotificationPort(Protocol):
    """Delivers a user-facing message (email, in-app, push)."""

    def notify(self, user_id: str, kind: str, payload: Dict[str, Any]) -> None:
        ...


class AnalyticsPort(Protocol):
    """Records a product analytics event."""

    def track(self, event_type: str, user_id: str, properties: Dict[str, Any]) -> None:
        ...


class LoggingNotifier:
    def notify(self, user_id: str, kind: str, payload: Dict[str, Any]) -> None:
        log_event("info", "notification.sent", user_id=user_id, event_type=kind, extra=payload)


class LoggingAnalytics:
    def track(self, event_type: str, user_id: str, properties: Dict[str, Any]) -> None:
        log_event("info", "analytics.tracked", user_id=user_id, event_type=event_type, extra=properties)


_notifier: NotificationPort = LoggingNotifier()
_analytics: AnalyticsPort = LoggingAnalytics()


def get_notifier() -> NotificationPort:
    return _notifier


def get_analytics() -> AnalyticsPort:
    return _analytics


def set_notifier(notifier: NotificationPort) -> None:
    global _notifier
    _notifier = notifier


def set_analytics(analytics: AnalyticsPort) -> None:
    global _analytics
    _analytics = analytics


def reset_ports() -> None:
    """Restore the logging defaults."""
    set_notifier(LoggingNotifier())
    set_analytics(LoggingAnalytics())


def emit_best_effort(label: str, fn: Callable[..., Any], *args, **kwargs) -> bool:
    """
    Run a secondary effect, logging and swallowing any failure.

    Returns True if the effect ran without raising.
    """
    try:
        fn(*args, **kwargs)
        return True
    except Exception as e:
        logger.warning(
            "[ports] secondary effect failed",
            exc_info=True,
            extra={"effect": label, "error": str(e)},
        )
        return False


def notify(
    user_id: str,
    kind: str,
    payload: Optional[Dict[str, Any]] = None,
    notifier: Optional[NotificationPort] = None,
) -> bool:
    port = notifier or get_notifier()
    return emit_best_effort(f"notify:{kind}", port.notify, user_id, kind, payload or {})


def track(
    event_type: str,
    user_id: str,
    properties: Optional[Dict[str, Any]] = None,
    analytics: Optional[AnalyticsPort] = None,
) -> bool:
    port = analytics or get_analytics()
    return emit_best_effort(f"track:{event_type}", port.track, event_type, user_id, properties or {})
