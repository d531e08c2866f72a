"""Run the shop API and the Telegram bot it hosts under uvicorn."""
import signal
import sys

import uvicorn

from vpnshop.core.config import settings


def handle_signal(sig, frame):
    print(f"\n[*] Signal {sig} received, stopping the shop...")
    sys.exit(0)


signal.signal(signal.SIGINT, handle_signal)
signal.signal(signal.SIGTERM, handle_signal)

if __name__ == "__main__":
    print("=" * 50)
    print("  X-RAY VPN shop: API + Telegram bot")
    print(f"  http://{settings.API_HOST}:{settings.API_PORT}/health")
    print("=" * 50)
    uvicorn.run(
        "vpnshop.main:app",
        host=settings.API_HOST,
        port=settings.API_PORT,
        log_level="debug" if settings.DEBUG else "info",
    )
