# hotelpos/config.py
from __future__ import annotations
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

log = logging.getLogger(__name__)

CONFIG_FILE = Path(__file__).resolve().parent / "config.json"

@dataclass
class DatabaseConfig:
    url: str = "sqlite:///hotelpos.db"
    echo: bool = False
    seed_demo_data: bool = True

@dataclass
class AuthConfig:
    jwt_secret: str = "CHANGE_ME_IN_PRODUCTION"
    jwt_algorithm: str = "HS256"

@dataclass
class OrdersConfig:
    tax_rate: float = 0.12          # GST
    order_number_prefix: str = "ORD"

@dataclass
class NotificationsConfig:
    ttl_hours: int = 168            # 0 = nessuna scadenza
    max_page_size: int = 100
    dedupe_window_ms: int = 1000
    toast_ms: int = 5000
    keep_last: int = 50

@dataclass
class LoggingConfig:
    level: str = "INFO"

@dataclass
class AppConfig:
    # ⚠️ Usare default_factory per oggetti mutabili
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)
    orders: OrdersConfig = field(default_factory=OrdersConfig)
    notifications: NotificationsConfig = field(default_factory=NotificationsConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

def _merge(dst: dict, src: dict) -> dict:
    for k, v in src.items():
        if isinstance(v, dict) and isinstance(dst.get(k), dict):
            dst[k] = _merge(dst[k], v)
        else:
            dst[k] = v
    return dst

def _defaults() -> dict:
    return {
        "database": {"url": "sqlite:///hotelpos.db", "echo": False, "seed_demo_data": True},
        "auth": {"jwt_secret": "CHANGE_ME_IN_PRODUCTION", "jwt_algorithm": "HS256"},
        "orders": {"tax_rate": 0.12, "order_number_prefix": "ORD"},
        "notifications": {
            "ttl_hours": 168,
            "max_page_size": 100,
            "dedupe_window_ms": 1000,
            "toast_ms": 5000,
            "keep_last": 50,
        },
        "logging": {"level": "INFO"},
    }

def load_config(path: Optional[Path] = None, overrides: Optional[dict] = None) -> AppConfig:
    data = _defaults()

    cfg_path = path or Path(os.getenv("HOTELPOS_CONFIG", str(CONFIG_FILE)))
    if cfg_path.exists():
        try:
            file_data = json.loads(cfg_path.read_text(encoding="utf-8"))
            data = _merge(data, file_data or {})
        except (OSError, ValueError) as e:
            # file malformato → mantieni default
            log.warning("Config file %s ignored: %s", cfg_path, e)

    # variabili d'ambiente vincono sul file
    env_map = {
        "HOTELPOS_DB_URL": ("database", "url"),
        "HOTELPOS_JWT_SECRET": ("auth", "jwt_secret"),
        "HOTELPOS_LOG_LEVEL": ("logging", "level"),
    }
    for env_name, (section, key) in env_map.items():
        val = os.getenv(env_name)
        if val:
            data[section][key] = val

    if overrides:
        data = _merge(data, overrides)

    d, a, o, n, lg = data["database"], data["auth"], data["orders"], data["notifications"], data["logging"]
    return AppConfig(
        database=DatabaseConfig(
            url=str(d.get("url", "sqlite:///hotelpos.db")),
            echo=bool(d.get("echo", False)),
            seed_demo_data=bool(d.get("seed_demo_data", True)),
        ),
        auth=AuthConfig(
            jwt_secret=str(a.get("jwt_secret", "CHANGE_ME_IN_PRODUCTION")),
            jwt_algorithm=str(a.get("jwt_algorithm", "HS256")),
        ),
        orders=OrdersConfig(
            tax_rate=float(o.get("tax_rate", 0.12)),
            order_number_prefix=str(o.get("order_number_prefix", "ORD")),
        ),
        notifications=NotificationsConfig(
            ttl_hours=int(n.get("ttl_hours", 168)),
            max_page_size=int(n.get("max_page_size", 100)),
            dedupe_window_ms=int(n.get("dedupe_window_ms", 1000)),
            toast_ms=int(n.get("toast_ms", 5000)),
            keep_last=int(n.get("keep_last", 50)),
        ),
        logging=LoggingConfig(level=str(lg.get("level", "INFO")).upper()),
    )
