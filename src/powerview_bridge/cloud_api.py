"""PowerView cloud client.

Fallback route for shade positioning on hubs whose local API rejects direct
position writes. Logs in with the account email/password, remembers the token
and home id on disk, and sends position writes through the cloud service.
"""

from __future__ import annotations

import asyncio
import datetime
import json
from pathlib import Path
from typing import Self, cast

import aiohttp
from pydantic import BaseModel, ValidationError, computed_field

from powerview_bridge.const import (
    POWERVIEW_API_TIMEOUT,
    POWERVIEW_CLOUD_AUTH_PATH,
    POWERVIEW_CLOUD_BASES,
)
from powerview_bridge.exceptions import CloudAuthenticationError, HubUnreachableError
from powerview_bridge.instrumentation import timed_async
from powerview_bridge.logging_abstraction import get_logger

logger = get_logger(__name__)

AUTH_ENDPOINT = "/v1/authentication/login"
DEFAULT_TOKEN_LIFETIME = 86400


class CloudToken(BaseModel):
    """Cached login result.

    Login response structure:
        {"accessToken": "...", "homes": [{"id": "..."}], "expiresIn": 86400}
    """

    access_token: str
    home_id: str
    base_url: str
    issued_at: datetime.datetime
    expire_in: int = DEFAULT_TOKEN_LIFETIME

    @computed_field
    @property
    def expires_at(self) -> datetime.datetime:
        return self.issued_at + datetime.timedelta(seconds=self.expire_in)

    @property
    def expired(self) -> bool:
        return self.expires_at <= datetime.datetime.now(datetime.UTC)


class PowerViewCloudAPI:
    """Singleton cloud client. Credentials come from config or ``POWERVIEW_CLOUD_*``."""

    api_timeout: int = POWERVIEW_API_TIMEOUT
    lp: str = "PowerViewCloudAPI"
    auth_cache_file: str = POWERVIEW_CLOUD_AUTH_PATH
    token_cache: CloudToken | None = None
    http_session: aiohttp.ClientSession | None = None
    _instance: PowerViewCloudAPI | None = None

    def __new__(cls, *_args: object, **_kwargs: object) -> Self:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cast("Self", cls._instance)

    def __init__(
        self,
        email: str | None = None,
        password: str | None = None,
        api_timeout: int | None = None,
        auth_cache_file: str | None = None,
    ) -> None:
        self.email: str | None = email
        self.password: str | None = password
        if api_timeout:
            self.api_timeout = api_timeout
        if auth_cache_file:
            self.auth_cache_file = auth_cache_file

    @property
    def configured(self) -> bool:
        return bool(self.email and self.password)

    async def close(self) -> None:
        if self.http_session and not self.http_session.closed:
            logger.debug("%s:close: Closing aiohttp ClientSession", self.lp)
            await self.http_session.close()
        self.http_session = None

    async def _check_session(self) -> None:
        if not self.http_session or self.http_session.closed:
            logger.debug("%s:_check_session: Creating new aiohttp ClientSession", self.lp)
            self.http_session = aiohttp.ClientSession()

    async def read_token_cache(self) -> CloudToken | None:
        lp = f"{self.lp}:read_token_cache:"
        auth_file = Path(self.auth_cache_file)

        def _read_json() -> object:
            with auth_file.open("r", encoding="utf-8") as f:
                return json.load(f)

        try:
            raw = await asyncio.to_thread(_read_json)
            token = CloudToken.model_validate(raw)
        except FileNotFoundError:
            logger.debug("%s Token cache file not found: %s", lp, auth_file)
            return None
        except (json.JSONDecodeError, ValidationError, OSError) as e:
            logger.warning("%s Failed to parse token cache: %s", lp, e)
            return None
        return token

    async def write_token_cache(self, tkn: CloudToken) -> bool:
        lp = f"{self.lp}:write_token_cache:"
        auth_file = Path(self.auth_cache_file)

        def _write_json() -> None:
            auth_file.parent.mkdir(parents=True, exist_ok=True)
            with auth_file.open("w", encoding="utf-8") as f:
                json.dump(tkn.model_dump(mode="json", exclude={"expires_at"}), f, indent=2)

        try:
            await asyncio.to_thread(_write_json)
        except (OSError, TypeError, ValueError):
            logger.exception("%s Failed to write token cache", lp)
            return False
        logger.debug("%s Token cache written to %s", lp, auth_file)
        return True

    async def check_token(self) -> bool:
        """True when a usable (cached or in-memory) token exists."""
        if self.token_cache is None:
            self.token_cache = await self.read_token_cache()
        if self.token_cache is None or self.token_cache.expired:
            return False
        return True

    async def authenticate(self) -> CloudToken:
        """Log in, trying each cloud endpoint in turn.

        Raises:
            CloudAuthenticationError: no credentials, or every endpoint refused / was unreachable

        """
        lp = f"{self.lp}:authenticate:"
        if not self.configured:
            raise CloudAuthenticationError("cloud email/password not configured")
        await self._check_session()
        assert self.http_session is not None

        for base_url in POWERVIEW_CLOUD_BASES:
            try:
                r = await self.http_session.post(
                    f"{base_url}{AUTH_ENDPOINT}",
                    json={"email": self.email, "password": self.password},
                    timeout=aiohttp.ClientTimeout(total=self.api_timeout),
                )
                if r.status != 200:
                    logger.info("%s Login refused by %s (HTTP %s)", lp, base_url, r.status)
                    continue
                data = await r.json(content_type=None)
            except (aiohttp.ClientError, TimeoutError, json.JSONDecodeError) as e:
                logger.info("%s Endpoint %s unreachable: %s", lp, base_url, e)
                continue

            access_token = data.get("accessToken") if isinstance(data, dict) else None
            homes = data.get("homes") if isinstance(data, dict) else None
            home_id = homes[0].get("id") if isinstance(homes, list) and homes and isinstance(homes[0], dict) else None
            if not access_token or not home_id:
                logger.warning("%s %s accepted the login but returned no token or home id", lp, base_url)
                continue

            token = CloudToken(
                access_token=str(access_token),
                home_id=str(home_id),
                base_url=base_url,
                issued_at=datetime.datetime.now(datetime.UTC),
                expire_in=int(data.get("expiresIn") or DEFAULT_TOKEN_LIFETIME),
            )
            self.token_cache = token
            logger.info("%s Authenticated with %s", lp, base_url, extra={"home_id": token.home_id})
            if not await self.write_token_cache(token):
                logger.warning("%s Token kept in memory only, it will not survive a restart", lp)
            return token

        raise CloudAuthenticationError("all PowerView cloud endpoints refused or were unreachable")

    @timed_async("cloud_set_position")
    async def set_shade_position(self, shade_id: int, position: float) -> bool:
        """Set a shade position (0.0-1.0) through the cloud. Re-authenticates once on HTTP 401.

        Returns False only when the cloud definitively refuses the write.

        Raises:
            HubUnreachableError: transport failure or a 5xx reply; the next command tries again

        """
        lp = f"{self.lp}:set_shade_position:"
        if not await self.check_token():
            await self.authenticate()
        await self._check_session()
        assert self.http_session is not None

        for attempt in (1, 2):
            token = self.token_cache
            assert token is not None
            try:
                r = await self.http_session.put(
                    f"{token.base_url}/v1/homes/{token.home_id}/shades/{shade_id}/position",
                    json={"position": round(position * 100)},
                    headers={"Authorization": f"Bearer {token.access_token}"},
                    timeout=aiohttp.ClientTimeout(total=self.api_timeout),
                )
            except (aiohttp.ClientError, TimeoutError) as e:
                logger.warning("%s Cloud request failed: %s", lp, e, extra={"shade_id": shade_id})
                raise HubUnreachableError(f"cloud write for shade {shade_id} failed: {e!r}", hub=token.base_url) from e
            if r.status == 401 and attempt == 1:
                logger.info("%s Token rejected, logging in again", lp)
                self.token_cache = None
                await self.authenticate()
                continue
            if 200 <= r.status < 300:
                return True
            if r.status >= 500:
                raise HubUnreachableError(
                    f"cloud write for shade {shade_id} returned {r.status}", hub=token.base_url, status=r.status
                )
            logger.warning("%s Cloud refused shade %s: HTTP %s", lp, shade_id, r.status)
            return False
        return False
