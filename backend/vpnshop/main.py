"""
VPN Shop Backend.

ARCHITECTURE:
- Telegram Bot: storefront, support desk and staff tools (polling, own thread)
- FastAPI: health check and read-only admin views
- SQL database: users, balances, subscriptions, promo codes
- Marzban panel: VPN accounts (mock provider in local/development)

Conversation state, tickets and the flash sale live in bot memory only.
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from vpnshop.api.routes import admin
from vpnshop.core.config import settings
from vpnshop.db.init_db import init_db
from vpnshop.telegram.bot import bot_status, start_bot_background, stop_bot_background

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup:
    1. Initialize database tables and seed the catalog
    2. Start Telegram bot polling and the load watchdog (if token provided)

    Shutdown:
    1. Stop watchdog and polling
    """
    try:
        print("[*] Initializing database...")
        init_db()
        print("[OK] Database initialized")

        if settings.TELEGRAM_BOT_TOKEN:
            print("[*] Starting Telegram bot...")
            start_bot_background()
            print("[OK] Bot started")
        else:
            print("[WARN] Telegram bot disabled (no token)")
    except Exception as e:
        print(f"[ERROR] Startup error: {e}")
        import traceback
        traceback.print_exc()

    yield

    try:
        if settings.TELEGRAM_BOT_TOKEN:
            stop_bot_background()
    except Exception as e:
        print(f"[ERROR] Shutdown error: {e}")


app = FastAPI(
    title="VPN Shop API",
    description="Health and read-only admin views for the VPN shop bot.",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(admin.router, prefix="/admin", tags=["admin"])


@app.get("/health")
def health():
    return {"status": "ok", **bot_status()}
