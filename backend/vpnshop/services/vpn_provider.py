"""
VPN provisioning backends.

MockVPNProvider is used for local/development runs (deterministic keys and
fixed load figures). MarzbanProvider talks to a Marzban panel over its REST
API with an admin bearer token obtained on first use.
"""
import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

import requests

from vpnshop.core.config import settings
from vpnshop.core.exceptions import ProvisioningError

logger = logging.getLogger(__name__)

GB = 1024 ** 3


@dataclass
class SystemStats:
    cpu_percent: float
    memory_percent: float
    rx_mbps: float
    tx_mbps: float
    total_users: int
    active_users: int


@dataclass
class VPNUser:
    username: str
    status: str
    used_traffic: int  # bytes

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    @property
    def used_traffic_gb(self) -> float:
        return self.used_traffic / GB


class VPNProvider(ABC):
    @abstractmethod
    def create_user(self, username: str, tag: str, expires_at: datetime) -> str:
        """Create an account and return its connection key."""

    @abstractmethod
    def extend_user(self, username: str, expires_at: datetime) -> None:
        ...

    @abstractmethod
    def delete_user(self, username: str) -> None:
        ...

    @abstractmethod
    def get_all_users(self) -> List[VPNUser]:
        ...

    @abstractmethod
    def get_system_stats(self) -> SystemStats:
        ...


class MockVPNProvider(VPNProvider):
    def create_user(self, username: str, tag: str, expires_at: datetime) -> str:
        logger.info(f"[MockVPN] create {username} tag={tag} until {expires_at:%Y-%m-%d}")
        ts = int(time.time())
        return (
            f"vless://mock-{username}-{ts}@pl1.xray-vpn.com:443"
            f"?type=tcp&security=reality&sni=google.com#XRAY-PL-{username}"
        )

    def extend_user(self, username: str, expires_at: datetime) -> None:
        logger.info(f"[MockVPN] extend {username} until {expires_at:%Y-%m-%d}")

    def delete_user(self, username: str) -> None:
        logger.info(f"[MockVPN] delete {username}")

    def get_all_users(self) -> List[VPNUser]:
        return [
            VPNUser("tg_100001_1700000000", "active", 150 * GB),
            VPNUser("tg_100002_1700000000", "active", 80 * GB),
            VPNUser("tg_100003_1700000000", "active", 45 * GB),
            VPNUser("tg_100004_1700000000", "active", 20 * GB),
            VPNUser("tg_100005_1700000000", "disabled", 10 * GB),
        ]

    def get_system_stats(self) -> SystemStats:
        return SystemStats(
            cpu_percent=35.0,
            memory_percent=50.0,
            rx_mbps=75.0,
            tx_mbps=45.0,
            total_users=50,
            active_users=12,
        )


class MarzbanProvider(VPNProvider):
    def __init__(self, base_url: str, username: str, password: str, timeout: int = 10):
        self.base_url = base_url.rstrip("/")
        self.username = username
        self.password = password
        self.timeout = timeout
        self._token: Optional[str] = None
        self._token_lock = threading.Lock()
        self._session = requests.Session()

    def _authenticate(self) -> str:
        try:
            resp = self._session.post(
                f"{self.base_url}/api/admin/token",
                data={"username": self.username, "password": self.password},
                timeout=self.timeout,
            )
            resp.raise_for_status()
        except requests.RequestException as e:
            raise ProvisioningError(f"marzban auth failed: {e}") from e
        return resp.json()["access_token"]

    def _headers(self) -> dict:
        with self._token_lock:
            if self._token is None:
                self._token = self._authenticate()
            return {"Authorization": f"Bearer {self._token}"}

    def _request(self, method: str, path: str, **kwargs):
        url = f"{self.base_url}{path}"
        try:
            resp = self._session.request(method, url, headers=self._headers(), timeout=self.timeout, **kwargs)
            if resp.status_code == 401:
                # Token expired, re-authenticate once
                with self._token_lock:
                    self._token = None
                resp = self._session.request(method, url, headers=self._headers(), timeout=self.timeout, **kwargs)
            resp.raise_for_status()
        except requests.RequestException as e:
            raise ProvisioningError(f"marzban {method} {path} failed: {e}") from e
        return resp.json() if resp.content else None

    def create_user(self, username: str, tag: str, expires_at: datetime) -> str:
        payload = {
            "username": username,
            "proxies": {"vless": {"flow": "xtls-rprx-vision"}},
            "inbounds": {"vless": [tag]},
            "expire": int(expires_at.timestamp()),
            "data_limit": 0,
            "status": "active",
        }
        data = self._request("POST", "/api/user", json=payload)
        links = (data or {}).get("links") or []
        if not links:
            raise ProvisioningError(f"marzban returned no links for {username}")
        return links[0]

    def extend_user(self, username: str, expires_at: datetime) -> None:
        self._request("PUT", f"/api/user/{username}", json={"expire": int(expires_at.timestamp()), "status": "active"})

    def delete_user(self, username: str) -> None:
        self._request("DELETE", f"/api/user/{username}")

    def get_all_users(self) -> List[VPNUser]:
        data = self._request("GET", "/api/users") or {}
        return [
            VPNUser(u["username"], u.get("status", ""), int(u.get("used_traffic") or 0))
            for u in data.get("users", [])
        ]

    def get_system_stats(self) -> SystemStats:
        data = self._request("GET", "/api/system") or {}
        mem_total = data.get("mem_total") or 0
        mem_used = data.get("mem_used") or 0
        return SystemStats(
            cpu_percent=float(data.get("cpu_usage") or 0),
            memory_percent=(mem_used / mem_total * 100) if mem_total else 0.0,
            # bytes/s -> Mbps
            rx_mbps=float(data.get("incoming_bandwidth_speed") or 0) * 8 / 1e6,
            tx_mbps=float(data.get("outgoing_bandwidth_speed") or 0) * 8 / 1e6,
            total_users=int(data.get("total_user") or 0),
            active_users=int(data.get("users_active") or 0),
        )


def build_provider() -> VPNProvider:
    if settings.USE_MOCK_VPN:
        logger.info("[VPN] Using mock provider")
        return MockVPNProvider()
    return MarzbanProvider(
        settings.MARZBAN_BASE_URL,
        settings.MARZBAN_USERNAME,
        settings.MARZBAN_PASSWORD,
        timeout=settings.MARZBAN_TIMEOUT_SECONDS,
    )
