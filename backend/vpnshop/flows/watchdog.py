"""
Load watchdog for the VPN node.

Samples the provisioning backend every interval and alerts staff when CPU or
inbound traffic crosses its threshold. Alerts are throttled: after one alert,
further breaches inside the cooldown window are ignored. The loop runs as an
asyncio task on the bot loop; provider calls are blocking and go through the
default executor.
"""
import asyncio
import logging
import threading
import time
from typing import Awaitable, Callable, List, Optional

from vpnshop.core.config import settings
from vpnshop.services.vpn_provider import SystemStats, VPNProvider, VPNUser

logger = logging.getLogger(__name__)

TEST_STATS = SystemStats(
    cpu_percent=98.5,
    memory_percent=75.0,
    rx_mbps=450.0,
    tx_mbps=120.0,
    total_users=100,
    active_users=45,
)
TEST_PREFIX = "🧪 *TEST ALERT* (симуляция)\n\n"


def top_active_entities(users: List[VPNUser], k: int = 3) -> List[VPNUser]:
    active = [u for u in users if u.is_active]
    return sorted(active, key=lambda u: u.used_traffic, reverse=True)[:k]


def _cpu_mark(cpu: float) -> str:
    if cpu >= 90:
        return "🔴"
    if cpu >= 70:
        return "🟡"
    return "🟢"


def format_alert_message(stats: SystemStats, top_users: List[VPNUser]) -> str:
    net_mark = "🚀" if stats.rx_mbps >= 300 else "🟢"
    lines = [
        "☠️ *DDoS / HIGH LOAD ALERT*",
        "",
        f"🖥 CPU: {_cpu_mark(stats.cpu_percent)} *{stats.cpu_percent:.1f}%*",
        f"🧠 RAM: {stats.memory_percent:.1f}%",
        f"📥 RX: {net_mark} *{stats.rx_mbps:.1f} Mbps*",
        f"📤 TX: {stats.tx_mbps:.1f} Mbps",
        "",
        f"👥 Active: {stats.active_users}/{stats.total_users}",
    ]
    if top_users:
        lines += ["", "🔝 *Top users by traffic:*"]
        for i, u in enumerate(top_users, 1):
            lines.append(f"{i}. `{u.username}` - {u.used_traffic_gb:.1f} GB")
    lines += ["", "_Check Marzban Panel immediately._"]
    return "\n".join(lines)


class WatchdogLoop:
    def __init__(
        self,
        provider: VPNProvider,
        notify: Callable[[str], Awaitable[None]],
        interval: float = settings.WATCHDOG_INTERVAL_SECONDS,
        cpu_threshold: float = settings.WATCHDOG_CPU_THRESHOLD,
        rx_threshold: float = settings.WATCHDOG_RX_THRESHOLD_MBPS,
        cooldown: float = settings.WATCHDOG_COOLDOWN_SECONDS,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.provider = provider
        self.notify = notify
        self.interval = interval
        self.cpu_threshold = cpu_threshold
        self.rx_threshold = rx_threshold
        self.cooldown = cooldown
        self._clock = clock or time.monotonic
        self._state_lock = threading.Lock()
        self._last_alert: Optional[float] = None
        self._task: Optional[asyncio.Task] = None
        self._stop: Optional[asyncio.Event] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def last_alert(self) -> Optional[float]:
        with self._state_lock:
            return self._last_alert

    def start(self) -> None:
        if self.is_running:
            return
        self._stop = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(self._loop())
        logger.info(
            f"[Watchdog] Started. Interval {self.interval}s, CPU>={self.cpu_threshold}%, "
            f"RX>={self.rx_threshold} Mbps, cooldown {self.cooldown}s"
        )

    async def stop(self) -> None:
        """Signal the loop and wait until it has exited."""
        if self._task is None:
            return
        self._stop.set()
        try:
            await self._task
        finally:
            self._task = None
            logger.info("[Watchdog] Stopped")

    async def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval)
                break
            except asyncio.TimeoutError:
                pass
            try:
                await self.check_once()
            except Exception as e:
                logger.error(f"[Watchdog] Check failed: {e}")

    def is_breach(self, stats: SystemStats) -> bool:
        return stats.cpu_percent >= self.cpu_threshold or stats.rx_mbps >= self.rx_threshold

    def _claim_alert(self) -> bool:
        """Record an alert now unless one was sent inside the cooldown window."""
        with self._state_lock:
            now = self._clock()
            if self._last_alert is not None and now - self._last_alert < self.cooldown:
                return False
            self._last_alert = now
            return True

    async def check_once(self) -> bool:
        """One sample. Returns True if an alert was sent."""
        loop = asyncio.get_running_loop()
        stats = await loop.run_in_executor(None, self.provider.get_system_stats)
        if not self.is_breach(stats):
            logger.debug(f"[Watchdog] OK cpu={stats.cpu_percent:.1f} rx={stats.rx_mbps:.1f}")
            return False

        if not self._claim_alert():
            logger.info("[Watchdog] Breach inside cooldown, alert suppressed")
            return False

        try:
            users = await loop.run_in_executor(None, self.provider.get_all_users)
        except Exception as e:
            logger.warning(f"[Watchdog] User list unavailable: {e}")
            users = []

        logger.warning(f"[Watchdog] High load: cpu={stats.cpu_percent:.1f}% rx={stats.rx_mbps:.1f} Mbps")
        await self.notify(format_alert_message(stats, top_active_entities(users)))
        return True

    async def send_test_alert(self) -> None:
        """Simulated alert for staff. Does not touch the cooldown."""
        loop = asyncio.get_running_loop()
        try:
            users = await loop.run_in_executor(None, self.provider.get_all_users)
        except Exception as e:
            logger.warning(f"[Watchdog] User list unavailable: {e}")
            users = []
        await self.notify(TEST_PREFIX + format_alert_message(TEST_STATS, top_active_entities(users)))
