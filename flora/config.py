from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

import streamlit as st

CONFIG_FILE_NAME = "settings.json"
ENV_DATA_DIR = "FLORA_POS_DATA_DIR"
ENV_LOG_LEVEL = "FLORA_POS_LOG_LEVEL"
SESSION_DATA_DIR = "flora_pos_data_dir"

# Tax-inclusive German rates (reduced for flowers/plants, standard for the rest).
VAT_RATES = (7, 19)
DEFAULT_VAT_RATE = 19

# Bouquet pricing rules of thumb used by the florist.
LABOR_PERCENTAGE = 0.10
QUICK_BOUQUET_MARKUP = 2.5

BOUQUET_CATEGORY = "Bouquets"
FALLBACK_CATEGORY = "Other"


@dataclass(frozen=True)
class Settings:
    data_dir: Path
    db_path: Path
    currency: str = "EUR"
    store_name: str = "Flora"
    store_address: str = ""
    default_vat_rate: int = DEFAULT_VAT_RATE
    busy_timeout_s: float = 5.0


def _default_data_dir() -> Path:
    return Path.home() / ".flora_pos"


def _load_persisted_settings(data_dir: Path) -> dict:
    cfg = data_dir / CONFIG_FILE_NAME
    if cfg.exists():
        try:
            return json.loads(cfg.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return {}
    return {}


def persist_settings(data_dir_str: str, **extra) -> Path:
    """Write settings.json into the chosen data directory and return it."""
    data_dir = Path(data_dir_str).expanduser().resolve()
    data_dir.mkdir(parents=True, exist_ok=True)

    cfg = data_dir / CONFIG_FILE_NAME
    payload = _load_persisted_settings(data_dir)
    payload.update({k: v for k, v in extra.items() if v is not None})
    payload["data_dir"] = str(data_dir)
    cfg.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    return data_dir


def persist_data_dir(data_dir_str: str) -> None:
    data_dir = persist_settings(data_dir_str)

    # Update session for immediate effect
    st.session_state[SESSION_DATA_DIR] = str(data_dir)


def load_settings(
    *,
    session_data_dir: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    default_dir: Optional[Path] = None,
) -> Settings:
    # Priority order:
    # 1) Session state (set via Data Management page)
    # 2) Environment variable
    # 3) Persisted settings in default folder
    # 4) Default folder
    env = os.environ if env is None else env
    default_dir = _default_data_dir() if default_dir is None else default_dir

    if session_data_dir:
        data_dir = Path(session_data_dir).expanduser().resolve()
    elif env.get(ENV_DATA_DIR):
        data_dir = Path(env.get(ENV_DATA_DIR, "")).expanduser().resolve()
    else:
        persisted = _load_persisted_settings(default_dir)
        data_dir = Path(persisted.get("data_dir", default_dir)).expanduser().resolve()

    data_dir.mkdir(parents=True, exist_ok=True)
    stored = _load_persisted_settings(data_dir)

    vat = int(stored.get("default_vat_rate", DEFAULT_VAT_RATE))
    if vat not in VAT_RATES:
        vat = DEFAULT_VAT_RATE

    return Settings(
        data_dir=data_dir,
        db_path=data_dir / "flora.db",
        currency=str(stored.get("currency", "EUR")),
        store_name=str(stored.get("store_name", "Flora")),
        store_address=str(stored.get("store_address", "")),
        default_vat_rate=vat,
        busy_timeout_s=float(stored.get("busy_timeout_s", 5.0)),
    )


@st.cache_resource
def get_settings() -> Settings:
    return load_settings(session_data_dir=st.session_state.get(SESSION_DATA_DIR))


def configure_logging(level: Optional[str] = None) -> None:
    level = (level or os.getenv(ENV_LOG_LEVEL) or "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
