"""
Engine configuration read from the environment (.env is loaded by server.py).
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional
import os

from engine.settings_service import OFFICE_CHARGE_KEY, REMINDER_DAYS_KEY

TRUE_VALUES = ("1", "true", "yes", "on")


@dataclass
class EngineConfig:
    mongo_url: str = "mongodb://localhost:27017"
    db_name: str = "land_sales"
    use_transactions: bool = False
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    setting_overrides: Dict[str, Any] = field(default_factory=dict)


def load_engine_config(environ: Optional[Mapping[str, str]] = None) -> EngineConfig:
    env = os.environ if environ is None else environ

    overrides: Dict[str, Any] = {}
    if env.get(OFFICE_CHARGE_KEY):
        overrides[OFFICE_CHARGE_KEY] = float(env[OFFICE_CHARGE_KEY])
    if env.get(REMINDER_DAYS_KEY):
        overrides[REMINDER_DAYS_KEY] = int(env[REMINDER_DAYS_KEY])

    origins = [o.strip() for o in env.get("CORS_ORIGINS", "*").split(",") if o.strip()]

    return EngineConfig(
        mongo_url=env.get("MONGO_URL", EngineConfig.mongo_url),
        db_name=env.get("DB_NAME", EngineConfig.db_name),
        use_transactions=env.get("MONGO_TRANSACTIONS", "false").strip().lower() in TRUE_VALUES,
        cors_origins=origins or ["*"],
        setting_overrides=overrides,
    )
