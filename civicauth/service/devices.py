from __future__ import annotations

import secrets
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from civicauth.config import Settings
from civicauth.logging import get_logger
from civicauth.service.sessions import extract_device_info
from civicauth.storage.ephemeral import EphemeralStore
from civicauth.storage.models import TrustedDevice, utcnow

logger = get_logger(__name__)


def _string_hash32(value: str) -> int:
    """Signed 32-bit ``h = h * 31 + ord(c)`` hash over UTF-16 code units."""
    h = 0
    encoded = value.encode("utf-16-le")
    for i in range(0, len(encoded), 2):
        unit = encoded[i] | (encoded[i + 1] << 8)
        h = (h * 31 + unit) & 0xFFFFFFFF
    return h - 0x100000000 if h & 0x80000000 else h


def device_fingerprint(user_agent: Optional[str], origin: Optional[str]) -> str:
    """Deterministic, non-cryptographic client fingerprint (8 hex chars).

    Collisions are tolerated: trust is a convenience, not an identity proof.
    """
    source = f"{user_agent or 'unknown'}-{origin or 'unknown'}"
    return format(abs(_string_hash32(source)), "x").zfill(8)


@dataclass(frozen=True)
class TrustCheck:
    trusted: bool
    device_id: Optional[str] = None


class DeviceTrustManager:
    """Time-boxed second-factor exemption for recognised clients.

    Callers must still verify the primary credential; trust only decides
    whether a second factor is requested.
    """

    def __init__(
        self,
        cache: EphemeralStore,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.cache = cache
        self.trust_window = timedelta(days=settings.device_trust_days)
        self._clock = clock

    fingerprint = staticmethod(device_fingerprint)

    @staticmethod
    def _key(device_id: str) -> str:
        return f"trusted_device:{device_id}"

    @staticmethod
    def _index(user_id: int) -> str:
        return f"user_devices:{user_id}"

    async def _load(self, device_id: str) -> Optional[TrustedDevice]:
        payload = await self.cache.get(self._key(device_id))
        if payload is None:
            return None
        device = TrustedDevice.from_payload(payload)
        if device.expires_at <= self._clock():
            await self.cache.delete(self._key(device_id))
            await self.cache.index_remove(self._index(device.user_id), device_id)
            return None
        return device

    async def trust(
        self, user_id: int, user_agent: Optional[str], origin: Optional[str]
    ) -> str:
        now = self._clock()
        device = TrustedDevice(
            id=secrets.token_hex(16),
            user_id=user_id,
            fingerprint=device_fingerprint(user_agent, origin),
            device_name=extract_device_info(user_agent),
            ip_address=origin,
            created_at=now,
            expires_at=now + self.trust_window,
            last_used_at=now,
        )
        ttl = int(self.trust_window.total_seconds())
        await self.cache.set(self._key(device.id), device.to_payload(), ttl)
        await self.cache.index_add(self._index(user_id), device.id, ttl)
        logger.info(
            "device_trusted",
            user_id=user_id,
            device_id=device.id,
            fingerprint=device.fingerprint,
        )
        return device.id

    async def list_devices(self, user_id: int) -> List[TrustedDevice]:
        index = self._index(user_id)
        devices: List[TrustedDevice] = []
        stale: List[str] = []
        for device_id in await self.cache.index_members(index):
            device = await self._load(device_id)
            if device is None or device.user_id != user_id:
                stale.append(device_id)
            else:
                devices.append(device)
        if stale:
            await self.cache.index_remove(index, *stale)
        return sorted(devices, key=lambda d: d.created_at, reverse=True)

    async def is_trusted(
        self, user_id: int, user_agent: Optional[str], origin: Optional[str]
    ) -> TrustCheck:
        fingerprint = device_fingerprint(user_agent, origin)
        for device in await self.list_devices(user_id):
            if device.fingerprint != fingerprint:
                continue
            now = self._clock()
            remaining = int((device.expires_at - now).total_seconds())
            if remaining > 0:
                await self.cache.set(
                    self._key(device.id),
                    replace(device, last_used_at=now).to_payload(),
                    remaining,
                )
            return TrustCheck(trusted=True, device_id=device.id)
        return TrustCheck(trusted=False)

    async def revoke(self, user_id: int, device_id: str) -> bool:
        device = await self._load(device_id)
        if device is None or device.user_id != user_id:
            return False
        await self.cache.delete(self._key(device_id))
        await self.cache.index_remove(self._index(user_id), device_id)
        logger.info("device_trust_revoked", user_id=user_id, device_id=device_id)
        return True

    async def revoke_all(self, user_id: int) -> int:
        count = 0
        for device in await self.list_devices(user_id):
            if await self.revoke(user_id, device.id):
                count += 1
        logger.info("device_trust_revoked_all", user_id=user_id, count=count)
        return count
