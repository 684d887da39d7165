from __future__ import annotations

import re
import threading
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import inspect
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from storefront.models import Setting

KILL_SWITCH_KEY = 'kill_switch'
OPERATING_MODE_KEY = 'operating_mode'
CJ_CONFIG_KEY = 'cj_config'
PRICING_POLICY_KEY = 'pricing_policy'

OPERATING_MODES = ('monitor', 'copilot', 'autopilot')


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def get_setting(db: Session, key: str, fallback: Any = None) -> Any:
    row = db.get(Setting, key)
    if row is None or row.value is None:
        return fallback
    return row.value


def set_setting(db: Session, key: str, value: Any) -> None:
    row = db.get(Setting, key)
    if row is None:
        db.add(Setting(key=key, value=value, updated_at=_now()))
    else:
        row.value = value
        row.updated_at = _now()
    db.flush()


def is_kill_switch_on(db: Session) -> bool:
    return bool(get_setting(db, KILL_SWITCH_KEY, False))


def set_kill_switch(db: Session, on: bool) -> None:
    set_setting(db, KILL_SWITCH_KEY, bool(on))


def get_operating_mode(db: Session) -> str:
    value = get_setting(db, OPERATING_MODE_KEY, 'monitor')
    return value if value in OPERATING_MODES else 'monitor'


def set_operating_mode(db: Session, mode: str) -> None:
    if mode not in OPERATING_MODES:
        raise ValueError(f'Unknown operating mode: {mode}')
    set_setting(db, OPERATING_MODE_KEY, mode)


def get_cj_config(db: Session) -> dict:
    value = get_setting(db, CJ_CONFIG_KEY, None)
    if not isinstance(value, dict):
        return {'email': None, 'api_key': None, 'base': None}
    return {
        'email': value.get('email') or None,
        'api_key': value.get('api_key') or None,
        'base': value.get('base') or None,
    }


def set_cj_config(db: Session, *, email: str | None, api_key: str | None, base: str | None) -> None:
    set_setting(
        db,
        CJ_CONFIG_KEY,
        {
            'email': (email or '').strip() or None,
            'api_key': (api_key or '').strip() or None,
            'base': (base or '').strip() or None,
        },
    )


def mask_email(email: str | None) -> str | None:
    if not email:
        return None
    return re.sub(r'^(.{2}).+(@.*)$', r'\1***\2', email)


class TableInspector:
    """Answers "does this table exist" for the admin endpoints.

    Only positive answers are cached, so a migration applied while the
    process is running is picked up on the next check.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self._known: set[str] = set()
        self._lock = threading.Lock()

    def has_table(self, name: str) -> bool:
        with self._lock:
            if name in self._known:
                return True
        exists = inspect(self.engine).has_table(name)
        if exists:
            with self._lock:
                self._known.add(name)
        return exists

    def missing_tables(self, names) -> list[str]:
        return [name for name in names if not self.has_table(name)]

    def clear(self) -> None:
        with self._lock:
            self._known.clear()
