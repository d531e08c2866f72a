"""Load watchdog: thresholds, cooldown, lifecycle."""
import asyncio

import pytest

from vpnshop.flows.watchdog import TEST_PREFIX, WatchdogLoop, format_alert_message, top_active_entities
from vpnshop.services.vpn_provider import MockVPNProvider, SystemStats


class LoadedProvider(MockVPNProvider):
    def __init__(self, cpu=95.0, rx=10.0):
        self.cpu = cpu
        self.rx = rx

    def get_system_stats(self):
        return SystemStats(self.cpu, 60.0, self.rx, 5.0, 50, 40)


class Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def make_loop(provider, clock=None, interval=30):
    alerts = []

    async def notify(text):
        alerts.append(text)

    loop = WatchdogLoop(provider, notify, interval=interval, cpu_threshold=85, rx_threshold=400, cooldown=300,
                        clock=clock or Clock())
    return loop, alerts


@pytest.mark.asyncio
async def test_alert_then_cooldown():
    clock = Clock()
    wd, alerts = make_loop(LoadedProvider(cpu=95), clock)

    assert await wd.check_once() is True
    clock.now += 60
    assert await wd.check_once() is False, "Breach inside cooldown is suppressed"
    clock.now += 300
    assert await wd.check_once() is True
    assert len(alerts) == 2


@pytest.mark.asyncio
async def test_rx_threshold_alone_triggers():
    wd, alerts = make_loop(LoadedProvider(cpu=10, rx=450))
    assert await wd.check_once() is True
    assert "DDoS / HIGH LOAD ALERT" in alerts[0]


@pytest.mark.asyncio
async def test_no_breach_no_alert():
    wd, alerts = make_loop(MockVPNProvider())
    assert await wd.check_once() is False
    assert alerts == []
    assert wd.last_alert is None


@pytest.mark.asyncio
async def test_test_alert_ignores_cooldown():
    wd, alerts = make_loop(MockVPNProvider())
    await wd.send_test_alert()
    await wd.send_test_alert()
    assert len(alerts) == 2
    assert alerts[0].startswith(TEST_PREFIX)
    assert wd.last_alert is None


@pytest.mark.asyncio
async def test_start_is_idempotent_and_stop_exits():
    wd, _ = make_loop(MockVPNProvider(), interval=0.01)
    wd.start()
    task = wd._task
    wd.start()
    assert wd._task is task

    await asyncio.sleep(0.05)
    await asyncio.wait_for(wd.stop(), timeout=1)
    assert not wd.is_running


class CountingProvider(LoadedProvider):
    def __init__(self):
        super().__init__(cpu=95.0)
        self.samples = 0

    def get_system_stats(self):
        self.samples += 1
        return super().get_system_stats()


@pytest.mark.asyncio
async def test_no_sample_after_stop_returns():
    provider = CountingProvider()
    alerts = []

    async def notify(text):
        alerts.append(text)

    wd = WatchdogLoop(provider, notify, interval=0.01, cpu_threshold=85, rx_threshold=400, cooldown=0)
    wd.start()
    await asyncio.sleep(0.08)
    await asyncio.wait_for(wd.stop(), timeout=1)

    samples, sent = provider.samples, len(alerts)
    assert samples > 0 and sent > 0
    await asyncio.sleep(0.08)
    assert provider.samples == samples, "Loop sampled after stop() returned"
    assert len(alerts) == sent

    await asyncio.wait_for(wd.stop(), timeout=1)
    assert not wd.is_running
    assert provider.samples == samples


def test_top_entities_skip_disabled_and_sort_by_traffic():
    users = MockVPNProvider().get_all_users()
    top = top_active_entities(users, k=3)
    assert [u.used_traffic_gb for u in top] == [150, 80, 45]
    text = format_alert_message(MockVPNProvider().get_system_stats(), top)
    assert text.rstrip().endswith("_Check Marzban Panel immediately._")
