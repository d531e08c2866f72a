"""Application configuration.

Environment variables override all defaults. Values are read once at import
time into the module-level ``settings`` object.
"""

import os
from pathlib import Path
from typing import List

from dotenv import load_dotenv

# Load .env for local development
_BACKEND_DIR = Path(__file__).resolve().parents[2]
load_dotenv(dotenv_path=_BACKEND_DIR / ".env", override=False)


def _parse_ids(raw: str) -> List[int]:
    ids = []
    for part in raw.split(","):
        part = part.strip()
        if part.lstrip("-").isdigit():
            ids.append(int(part))
    return ids


class Settings:
    # Database Configuration
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./vpnshop.db")

    # Telegram Bot (Must be set via .env, never in code)
    TELEGRAM_BOT_TOKEN: str = os.getenv("TELEGRAM_BOT_TOKEN", "")

    # Staff accounts and the support group (staff channel)
    ADMIN_IDS: List[int] = _parse_ids(os.getenv("ADMIN_IDS", ""))
    SUPPORT_GROUP_ID: int = int(os.getenv("SUPPORT_GROUP_ID", "0"))

    # "local" / "development" run against the mock provisioning provider
    APP_ENV: str = os.getenv("APP_ENV", "local")
    USE_MOCK_VPN: bool = APP_ENV in ("local", "development")

    # Marzban panel
    MARZBAN_BASE_URL: str = os.getenv("MARZBAN_BASE_URL", "")
    MARZBAN_USERNAME: str = os.getenv("MARZBAN_USERNAME", "")
    MARZBAN_PASSWORD: str = os.getenv("MARZBAN_PASSWORD", "")
    MARZBAN_TIMEOUT_SECONDS: int = int(os.getenv("MARZBAN_TIMEOUT_SECONDS", "10"))

    # Broadcast fan-out: one send per interval (50ms = 20 msg/s, under Telegram's 30/s)
    BROADCAST_INTERVAL_MS: int = int(os.getenv("BROADCAST_INTERVAL_MS", "50"))
    BROADCAST_PROGRESS_EVERY: int = int(os.getenv("BROADCAST_PROGRESS_EVERY", "100"))

    # Load watchdog
    WATCHDOG_INTERVAL_SECONDS: int = int(os.getenv("WATCHDOG_INTERVAL_SECONDS", "30"))
    WATCHDOG_CPU_THRESHOLD: float = float(os.getenv("WATCHDOG_CPU_THRESHOLD", "85"))
    WATCHDOG_RX_THRESHOLD_MBPS: float = float(os.getenv("WATCHDOG_RX_THRESHOLD_MBPS", "400"))
    WATCHDOG_COOLDOWN_SECONDS: int = int(os.getenv("WATCHDOG_COOLDOWN_SECONDS", "300"))

    # Storefront links and media
    FLASH_SALE_IMAGE_URL: str = os.getenv(
        "FLASH_SALE_IMAGE_URL",
        "https://i.ibb.co/flash-sale-banner.jpg",
    )
    CHANNEL_URL: str = os.getenv("CHANNEL_URL", "https://t.me/xray_vpn_news")
    CHAT_URL: str = os.getenv("CHAT_URL", "https://t.me/xray_vpn_chat")
    PRIVACY_URL: str = os.getenv(
        "PRIVACY_URL",
        "https://telegra.ph/Publichnaya-oferta-na-zaklyuchenie-licenzionnogo-dogovora-dlya-ispolzovaniya-VPN-servisa-06-14",
    )

    # Read-only admin HTTP endpoints (disabled when empty)
    ADMIN_API_TOKEN: str = os.getenv("ADMIN_API_TOKEN", "")
    API_HOST: str = os.getenv("API_HOST", "127.0.0.1")
    API_PORT: int = int(os.getenv("API_PORT", "8000"))

    ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development")
    DEBUG: bool = ENVIRONMENT == "development"


settings = Settings()
