from __future__ import annotations

import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, Field, ValidationError

from billing.models.company import CompanySettings

logger = logging.getLogger(__name__)

ROOT_DIR = Path(__file__).resolve().parents[1]
DATA_DIR = ROOT_DIR / "data"
SETTINGS_FILENAME = "settings.json"

DEFAULT_PREFIXES: Dict[str, str] = {
    "quotation": "QUO-",
    "invoice": "INV-",
    "credit_note": "CN-",
    "debit_note": "DN-",
}


class NumberingDefaults(BaseModel):
    prefixes: Dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_PREFIXES))
    start_number: int = Field(default=1001, ge=1)

    def prefix_for(self, document_type: str) -> str:
        return self.prefixes.get(document_type, DEFAULT_PREFIXES.get(document_type, ""))


class Settings(BaseModel):
    data_dir: Path = DATA_DIR
    backup_enabled: bool = True
    backup_keep: int = Field(default=5, ge=0)
    log_level: str = "INFO"
    numbering: NumberingDefaults = Field(default_factory=NumberingDefaults)
    company_defaults: CompanySettings = Field(default_factory=CompanySettings)


def _load_json(path: Path) -> Optional[Dict[str, Any]]:
    if not path.exists():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Unreadable settings file %s (%s), using defaults", path, e)
        return None
    return data if isinstance(data, dict) else None


def load_settings(data_dir: Optional[Union[str, Path]] = None, **overrides: Any) -> Settings:
    """
    Settings resolution, later wins:
    - built-in defaults
    - <data_dir>/settings.json
    - environment (BILLING_DATA_DIR, BILLING_LOG_LEVEL, BILLING_BACKUP_KEEP)
    - explicit keyword overrides
    """
    env_dir = os.environ.get("BILLING_DATA_DIR")
    base = Path(data_dir or env_dir or DATA_DIR)

    raw: Dict[str, Any] = _load_json(base / SETTINGS_FILENAME) or {}
    raw["data_dir"] = base

    if os.environ.get("BILLING_LOG_LEVEL"):
        raw["log_level"] = os.environ["BILLING_LOG_LEVEL"].strip().upper()
    if os.environ.get("BILLING_BACKUP_KEEP"):
        raw["backup_keep"] = os.environ["BILLING_BACKUP_KEEP"].strip()

    raw.update(overrides)
    try:
        return Settings.model_validate(raw)
    except ValidationError as e:
        raise ValueError(f"Invalid settings in {base / SETTINGS_FILENAME}: {e}") from e


def configure_logging(level: Union[str, int] = "INFO") -> None:
    logging.basicConfig(
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        level=level if isinstance(level, int) else getattr(logging, str(level).upper(), logging.INFO),
        handlers=[logging.StreamHandler(sys.stdout)],
    )
