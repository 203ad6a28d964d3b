import logging
from decimal import Decimal, InvalidOperation
from typing import Dict

from sqlmodel import Session, select

from ..core.constants import DEFAULT_SETTINGS
from ..models.setting import Setting

logger = logging.getLogger(__name__)


class SettingsService:
    def __init__(self, session: Session):
        self.session = session

    def get_all_settings(self) -> Dict[str, str]:
        settings = self.session.exec(select(Setting)).all()
        values = dict(DEFAULT_SETTINGS)
        values.update({s.key: s.value for s in settings})
        return values

    def update_settings(self, settings_to_update: Dict[str, str]):
        try:
            for key, value in settings_to_update.items():
                setting = self.session.get(Setting, key)
                if setting:
                    setting.value = str(value)
                    self.session.add(setting)
                else:
                    self.session.add(Setting(key=key, value=str(value)))
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

    def seed_defaults(self) -> int:
        """Insert any missing default setting. Returns how many were added."""
        added = 0
        try:
            for key, value in DEFAULT_SETTINGS.items():
                if self.session.get(Setting, key) is None:
                    self.session.add(Setting(key=key, value=value))
                    added += 1
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        return added

    def get_value(self, key: str) -> str:
        setting = self.session.get(Setting, key)
        if setting is None or setting.value in (None, ""):
            return DEFAULT_SETTINGS[key]
        return setting.value

    def get_int(self, key: str) -> int:
        raw = self.get_value(key)
        try:
            return int(raw)
        except (TypeError, ValueError):
            logger.warning(f"Setting '{key}' has invalid value {raw!r}, using default")
            return int(DEFAULT_SETTINGS[key])

    def get_decimal(self, key: str) -> Decimal:
        raw = self.get_value(key)
        try:
            value = Decimal(str(raw).strip())
            if not value.is_finite():
                raise InvalidOperation(raw)
            return value
        except (InvalidOperation, ValueError):
            logger.warning(f"Setting '{key}' has invalid value {raw!r}, using default")
            return Decimal(DEFAULT_SETTINGS[key])
