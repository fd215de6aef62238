"""
Best-effort alert dispatch.

Alerts never decide the outcome of the operation that raised them.  The
notification collaborator is called synchronously; whatever happens is
returned as an ``AlertDispatch`` and logged.
"""

import logging

from ledger_kernel.domain.collaborators import AlertDispatch, NotificationSink
from ledger_kernel.logging_config import get_logger

logger = get_logger("services.alerting")

_LOG_LEVELS = {"info": logging.INFO, "warning": logging.WARNING, "critical": logging.CRITICAL}


def dispatch_alert(
    sink: NotificationSink | None,
    category: str,
    severity: str,
    message: str,
    entity_ref: str | None = None,
) -> AlertDispatch:
    """Send one alert and report whether it was delivered."""
    category = getattr(category, "value", category)
    severity = getattr(severity, "value", severity)

    if sink is None:
        logger.warning(
            "alert_not_delivered",
            extra={"category": category, "severity": severity, "reason": "no sink configured"},
        )
        return AlertDispatch(category, severity, delivered=False, error="no sink configured")

    try:
        sink.send_alert(category, severity, message, entity_ref)
    except Exception as exc:
        logger.error(
            "alert_delivery_failed",
            extra={
                "category": category,
                "severity": severity,
                "entity_ref": entity_ref,
                "error": str(exc),
            },
        )
        return AlertDispatch(category, severity, delivered=False, error=str(exc))

    logger.info(
        "alert_dispatched",
        extra={"category": category, "severity": severity, "entity_ref": entity_ref},
    )
    return AlertDispatch(category, severity, delivered=True)


class LoggingNotificationSink:
    """Default sink: writes each alert to the structured log."""

    def __init__(self, logger_name: str = "alerts"):
        self._logger = get_logger(logger_name)

    def send_alert(
        self,
        category: str,
        severity: str,
        message: str,
        entity_ref: str | None = None,
    ) -> None:
        self._logger.log(
            _LOG_LEVELS.get(severity, logging.WARNING),
            "alert",
            extra={
                "category": category,
                "severity": severity,
                "alert_message": message,
                "entity_ref": entity_ref,
            },
        )
