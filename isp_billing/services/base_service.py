"""
LedgerBaseService: shared plumbing for the billing services.
Holds the session, the settings reader and the event publisher.
"""
from typing import Optional

from sqlmodel import Session

from ..core.events import EventPublisher, Outcome
from ..utils.dates import parse_datetime, utcnow
from .settings_service import SettingsService


class LedgerBaseService:
    """
    Usage:
        class MyService(LedgerBaseService):
            def __init__(self, session: Session, publisher=None):
                super().__init__(session, publisher)
    """

    def __init__(self, session: Session, publisher: Optional[EventPublisher] = None):
        """
        Args:
            session: SQLModel database session.
            publisher: where committed events are handed off (logging dispatcher by default).
        """
        self.session = session
        self.publisher = publisher or EventPublisher()
        self.settings = SettingsService(session)

    @staticmethod
    def _now(now=None):
        return parse_datetime(now, "now") if now is not None else utcnow()

    def _deliver(self, outcome: Outcome) -> Outcome:
        """Publish the outcome's events. Only call after the transaction committed."""
        outcome.delivery_failures.extend(self.publisher.publish(outcome.events))
        return outcome
