from __future__ import annotations

import os
from datetime import datetime
from typing import Dict

from dotenv import load_dotenv
from sqlalchemy.orm import Session

from clubhouse import models

load_dotenv()


DEFAULT_TIME_SLOT_HOURS: Dict[str, int] = {
    "afternoon": 12,
    "twilight": 16,
}

SETTING_KEYS = {
    "afternoon": "time_slot_afternoon_hour",
    "twilight": "time_slot_twilight_hour",
    "settle_tolerance": "settle_tolerance",
    "floor_price_rate": "team_floor_price_rate",
}


def _env_float(name: str, default: float) -> float:
    raw = str(os.getenv(name, "") or "").strip()
    if not raw:
        return float(default)
    try:
        return float(raw)
    except ValueError:
        print(f"[CONFIG] Ignoring invalid {name}={raw!r}, using {default}")
        return float(default)


def env_flag(name: str) -> bool:
    return str(os.getenv(name, "")).strip().lower() in {"1", "true", "yes"}


def _rate_in_range(value: float, name: str, default: float) -> float:
    # floor rates are fractions of the subtotal
    if 0 < value <= 1:
        return value
    print(f"[CONFIG] Ignoring {name}={value} outside (0, 1], using {default}")
    return float(default)


DEFAULT_SETTLE_TOLERANCE = _env_float("SETTLE_TOLERANCE", 0.01)
DEFAULT_FLOOR_PRICE_RATE = _rate_in_range(_env_float("TEAM_FLOOR_PRICE_RATE", 0.6), "TEAM_FLOOR_PRICE_RATE", 0.6)


def get_club_setting(db: Session, key: str) -> str | None:
    row = db.query(models.ClubSetting).filter(models.ClubSetting.key == key).first()
    if not row or row.value is None:
        return None
    return str(row.value)


def set_club_setting(db: Session, key: str, value: str) -> None:
    row = db.query(models.ClubSetting).filter(models.ClubSetting.key == key).first()
    if row:
        row.value = value
        row.updated_at = datetime.utcnow()
    else:
        db.add(models.ClubSetting(key=key, value=value))


def _club_setting_int(db: Session, key: str, default: int) -> int:
    raw = (get_club_setting(db, key) or "").strip()
    if not raw:
        return int(default)
    try:
        return int(float(raw))
    except ValueError:
        return int(default)


def _club_setting_float(db: Session, key: str, default: float) -> float:
    raw = (get_club_setting(db, key) or "").strip()
    if not raw:
        return float(default)
    try:
        return float(raw)
    except ValueError:
        return float(default)


def get_time_slot_hours(db: Session) -> Dict[str, int]:
    afternoon = _club_setting_int(db, SETTING_KEYS["afternoon"], DEFAULT_TIME_SLOT_HOURS["afternoon"])
    twilight = _club_setting_int(db, SETTING_KEYS["twilight"], DEFAULT_TIME_SLOT_HOURS["twilight"])
    afternoon = min(max(0, afternoon), 23)
    twilight = min(max(afternoon, twilight), 24)
    return {"afternoon": afternoon, "twilight": twilight}


def get_settle_tolerance(db: Session) -> float:
    return max(0.0, _club_setting_float(db, SETTING_KEYS["settle_tolerance"], DEFAULT_SETTLE_TOLERANCE))


def get_default_floor_price_rate(db: Session) -> float:
    key = SETTING_KEYS["floor_price_rate"]
    return _rate_in_range(_club_setting_float(db, key, DEFAULT_FLOOR_PRICE_RATE), key, DEFAULT_FLOOR_PRICE_RATE)
