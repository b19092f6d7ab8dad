"""PowerView hub HTTP client.

One client per gateway address. Replies are decoded once into the pydantic
models in ``structs`` here, at the boundary; nothing downstream sees raw hub
JSON. Network failures surface as ``HubUnreachableError`` and are never retried
inside the client (the poller and the next command are the retry).
"""

from __future__ import annotations

import base64
import binascii
import json
import re
import unicodedata
from typing import TYPE_CHECKING, Any, Self

import aiohttp
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from powerview_bridge.const import POWERVIEW_API_TIMEOUT, POWERVIEW_BATTERY_LEVELS
from powerview_bridge.exceptions import (
    CloudAuthenticationError,
    HubError,
    HubUnreachableError,
    NotPrimaryGatewayError,
    PositionControlUnsupportedError,
    ShadeNotFoundError,
)
from powerview_bridge.instrumentation import timed_async
from powerview_bridge.logging_abstraction import get_logger
from powerview_bridge.structs import GatewayInfo, Scene, Shade

if TYPE_CHECKING:
    from powerview_bridge.cloud_api import PowerViewCloudAPI

logger = get_logger(__name__)

NOT_PRIMARY_MARKER = "not primary"
_BASE64_RE = re.compile(r"^[A-Za-z0-9+/=]+$")
_ALLOWED_CONTROL_CHARS = frozenset("\n\r\t")
# local position write answered with one of these -> the hub has no such endpoint
_UNSUPPORTED_STATUSES = frozenset({404, 405, 501})


def decode_name(raw: str | None) -> str:
    """Decode a hub label that may be base64 encoded.

    Decoding is attempted only when the text looks like base64 (length a
    multiple of 4, no spaces, base64 alphabet only). Labels that fail to decode,
    are not UTF-8, or decode to control characters other than newline, carriage
    return and tab are returned unchanged.
    """
    if not raw:
        return ""
    text = raw.strip()
    if not text or len(text) % 4 != 0 or " " in text or not _BASE64_RE.match(text):
        return raw
    try:
        decoded = base64.b64decode(text, validate=True).decode("utf-8")
    except (binascii.Error, ValueError):
        return raw
    if any(unicodedata.category(c) == "Cc" and c not in _ALLOWED_CONTROL_CHARS for c in decoded):
        return raw
    return decoded


def battery_percent(code: int | None) -> int | None:
    """Hub battery status code (1-4) -> percent; anything else is unknown."""
    if code is None:
        return None
    return POWERVIEW_BATTERY_LEVELS.get(code)


def signal_percent(raw: int | None) -> int | None:
    """RSSI in dBm -> percent, -100 dBm is 0 and -30 dBm is 100."""
    if raw is None:
        return None
    return max(0, min(100, (raw + 100) * 100 // 70))


class _HubModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class GatewayEntry(_HubModel):
    ip: str | None = None
    shade_ids: list[int] = Field(default_factory=list, alias="shd_Ids")

    @field_validator("shade_ids", mode="before")
    @classmethod
    def _split_ids(cls, value: Any) -> Any:
        # either "12 168 170" or [12, 168, 170]
        if value is None:
            return []
        if isinstance(value, str):
            return [int(part) for part in value.split() if part.strip().lstrip("-").isdigit()]
        return value


class HomeResponse(_HubModel):
    gateways: list[GatewayEntry] = Field(default_factory=list)


class ShadePositions(_HubModel):
    primary: float | None = None


class ShadeDetailResponse(_HubModel):
    id: int
    name: str | None = None
    pt_name: str | None = Field(default=None, alias="ptName")
    type: int | None = None
    battery_status: int | None = Field(default=None, alias="batteryStatus")
    signal_strength: int | None = Field(default=None, alias="signalStrength")
    positions: ShadePositions | None = None

    def to_shade(self, hub: str) -> Shade:
        primary = self.positions.primary if self.positions else None
        if primary is not None:
            primary = max(0.0, min(1.0, primary))
        return Shade(
            id=self.id,
            name=decode_name(self.pt_name or self.name),
            hub=hub,
            position=primary,
            battery=battery_percent(self.battery_status),
            signal=signal_percent(self.signal_strength),
            shade_type=self.type,
        )


class SceneMember(_HubModel):
    shade_id: int | None = Field(default=None, alias="shd_Id")


class SceneEntry(_HubModel):
    id: int
    name: str | None = None
    pt_name: str | None = Field(default=None, alias="ptName")
    network_number: int | None = Field(default=None, alias="networkNumber")
    room_ids: list[int] = Field(default_factory=list, alias="roomIds")
    shade_ids: list[int] = Field(default_factory=list, alias="shadeIds")
    members: list[SceneMember] = Field(default_factory=list)

    def to_scene(self, hub: str) -> Scene:
        shade_ids = list(self.shade_ids)
        for member in self.members:
            if member.shade_id is not None and member.shade_id not in shade_ids:
                shade_ids.append(member.shade_id)
        return Scene(
            id=self.id,
            name=decode_name(self.pt_name or self.name),
            hub=hub,
            network_number=self.network_number,
            shade_ids=shade_ids,
            room_ids=list(self.room_ids),
        )


class PowerViewHubClient:
    """Async client for one PowerView gateway.

    Args:
        address: hub IP or host name
        api_timeout: total seconds per HTTP call
        cloud: optional cloud client used when the hub rejects direct position writes

    """

    api_timeout: int = POWERVIEW_API_TIMEOUT
    http_session: aiohttp.ClientSession | None = None

    def __init__(
        self,
        address: str,
        api_timeout: int | None = None,
        cloud: PowerViewCloudAPI | None = None,
    ) -> None:
        self.address: str = address
        self.base_url: str = f"http://{address}"
        self.lp: str = f"hub[{address}]:"
        if api_timeout:
            self.api_timeout = api_timeout
        self.cloud: PowerViewCloudAPI | None = cloud
        self.local_position_supported: bool = True

    async def __aenter__(self) -> Self:
        await self._check_session()
        return self

    async def __aexit__(self, *_exc: object) -> None:
        await self.close()

    async def close(self) -> None:
        if self.http_session and not self.http_session.closed:
            logger.debug("%sclose: Closing aiohttp ClientSession", self.lp)
            await self.http_session.close()
        self.http_session = None

    async def _check_session(self) -> None:
        if not self.http_session or self.http_session.closed:
            logger.debug("%s_check_session: Creating new aiohttp ClientSession", self.lp)
            self.http_session = aiohttp.ClientSession()

    async def _request(self, method: str, path: str, json_body: Any = None) -> tuple[int, Any]:
        """Send one request and return ``(status, decoded JSON or None)``.

        Raises:
            HubUnreachableError: transport failure or timeout
            NotPrimaryGatewayError: the hub answered with the multi-gateway "not primary" error

        """
        await self._check_session()
        assert self.http_session is not None
        url = f"{self.base_url}{path}"
        try:
            resp = await self.http_session.request(
                method,
                url,
                json=json_body,
                timeout=aiohttp.ClientTimeout(total=self.api_timeout),
            )
            status = resp.status
            text = await resp.text()
        except (aiohttp.ClientError, TimeoutError) as e:
            raise HubUnreachableError(f"{method} {url} failed: {e!r}", hub=self.address) from e

        body: Any = None
        if text:
            try:
                body = json.loads(text)
            except json.JSONDecodeError:
                logger.debug("%s %s %s returned non-JSON body (%s)", self.lp, method, path, status)
        self._raise_for_gateway_error(status, body)
        return status, body

    def _raise_for_gateway_error(self, status: int, body: Any) -> None:
        if status < 400 or not isinstance(body, dict):
            return
        err_msg = str(body.get("errMsg") or body.get("message") or "")
        if NOT_PRIMARY_MARKER in err_msg.casefold():
            raise NotPrimaryGatewayError(err_msg, hub=self.address, status=status)

    @timed_async("hub_list_shades")
    async def list_shades(self) -> list[Shade]:
        """All shades across the gateways this hub reports, one entry per shade id.

        Each shade carries the address of the gateway that owns it. A shade whose
        detail call fails is still returned (without state) so that a hiccup on
        one shade never makes it look removed.
        """
        lp = f"{self.lp}list_shades:"
        status, body = await self._request("GET", "/home")
        if status != 200 or not isinstance(body, dict):
            raise HubError(f"GET /home returned {status}", hub=self.address, status=status)
        try:
            home = HomeResponse.model_validate(body)
        except ValidationError as e:
            raise HubError(f"GET /home returned an unexpected shape: {e}", hub=self.address) from e

        shades: list[Shade] = []
        seen: set[int] = set()
        for gateway in home.gateways:
            gateway_ip = gateway.ip or self.address
            for shade_id in gateway.shade_ids:
                if shade_id in seen:
                    logger.debug("%s Skipping shade %s, already listed by another gateway", lp, shade_id)
                    continue
                seen.add(shade_id)
                try:
                    shade = await self.get_shade_detail(shade_id, gateway=gateway_ip)
                except HubUnreachableError:
                    raise
                except HubError as e:
                    logger.warning(
                        "%s Failed to fetch detail for shade %s: %s",
                        lp,
                        shade_id,
                        e,
                        extra={"shade_id": shade_id, "gateway": gateway_ip},
                    )
                    shade = Shade(id=shade_id, name=f"Shade {shade_id}", hub=gateway_ip)
                shades.append(shade)
        logger.debug("%s %s unique shades", lp, len(shades))
        return shades

    @timed_async("hub_get_shade_detail")
    async def get_shade_detail(self, shade_id: int, gateway: str | None = None) -> Shade:
        status, body = await self._request("GET", f"/home/shades/{shade_id}")
        if status == 404:
            raise ShadeNotFoundError(shade_id, hub=self.address)
        if status != 200 or not isinstance(body, dict):
            raise HubError(f"GET /home/shades/{shade_id} returned {status}", hub=self.address, status=status)
        body.setdefault("id", shade_id)
        try:
            detail = ShadeDetailResponse.model_validate(body)
        except ValidationError as e:
            raise HubError(f"shade {shade_id} detail has an unexpected shape: {e}", hub=self.address) from e
        return detail.to_shade(gateway or self.address)

    @timed_async("hub_set_position")
    async def set_position(self, shade_id: int, position: float) -> None:
        """Move a shade to ``position`` (0.0 closed .. 1.0 open).

        Tries the hub first, then the cloud service when one is configured.

        Raises:
            PositionControlUnsupportedError: no route accepted the write
            HubUnreachableError: the hub or the cloud could not be reached; nothing is learned from it

        """
        lp = f"{self.lp}set_position:"
        position = max(0.0, min(1.0, position))
        if self.local_position_supported:
            status, body = await self._request(
                "PUT",
                f"/home/shades/positions?ids={shade_id}",
                json_body={"positions": {"primary": position}},
            )
            if 200 <= status < 300:
                logger.debug("%s shade %s -> %.2f", lp, shade_id, position)
                return
            if status not in _UNSUPPORTED_STATUSES:
                raise HubError(
                    f"position write for shade {shade_id} returned {status}: {body}",
                    hub=self.address,
                    status=status,
                )
            logger.info("%s Hub does not accept direct position writes (HTTP %s)", lp, status)
            self.local_position_supported = False

        if self.cloud is not None:
            try:
                if await self.cloud.set_shade_position(shade_id, position):
                    logger.info("%s shade %s -> %.2f via cloud", lp, shade_id, position)
                    return
            except CloudAuthenticationError as e:
                logger.warning("%s Cloud fallback unavailable: %s", lp, e)
        raise PositionControlUnsupportedError(
            f"shade {shade_id}: direct position control is not supported",
            hub=self.address,
        )

    @timed_async("hub_list_scenes")
    async def list_scenes(self) -> list[Scene]:
        status, body = await self._request("GET", "/home/scenes")
        if status != 200:
            raise HubError(f"GET /home/scenes returned {status}", hub=self.address, status=status)
        if isinstance(body, dict):
            body = body.get("value", body.get("sceneData", []))
        if not isinstance(body, list):
            raise HubError("GET /home/scenes returned an unexpected shape", hub=self.address)

        scenes: list[Scene] = []
        seen: set[int] = set()
        for item in body:
            try:
                entry = SceneEntry.model_validate(item)
            except ValidationError as e:
                logger.warning("%slist_scenes: Skipping malformed scene entry: %s", self.lp, e)
                continue
            if entry.id in seen:
                continue
            seen.add(entry.id)
            scenes.append(entry.to_scene(self.address))
        return scenes

    @timed_async("hub_activate_scene")
    async def activate_scene(self, scene_id: int) -> None:
        """Activate a scene, trying the request shapes different hub firmwares accept."""
        lp = f"{self.lp}activate_scene:"
        attempts: tuple[tuple[str, str, Any], ...] = (
            ("PUT", f"/home/scenes/{scene_id}/activate", None),
            ("PUT", f"/home/scenes/{scene_id}/activate", {}),
            ("POST", f"/home/scenes/{scene_id}/activate", {}),
            ("PUT", f"/api/scenes/{scene_id}/activate", {}),
        )
        last_status: int | None = None
        for method, path, json_body in attempts:
            status, _body = await self._request(method, path, json_body=json_body)
            if 200 <= status < 300:
                logger.debug("%s scene %s activated with %s %s", lp, scene_id, method, path)
                return
            last_status = status
            logger.debug("%s %s %s returned %s", lp, method, path, status)
        raise HubError(f"scene {scene_id} activation rejected ({last_status})", hub=self.address, status=last_status)

    async def fetch_gateway_info(self) -> GatewayInfo:
        """Name / serial / firmware, used as a connection test at startup."""
        status, body = await self._request("GET", "/gateway")
        if status == 200 and isinstance(body, dict):
            config = body.get("config", body)
            fw = (config.get("firmware") or {}).get("mainProcessor") or {}
            firmware = f"{fw.get('revision')}.{fw.get('subRevision')}.{fw.get('build')}" if fw else None
            return GatewayInfo(name=config.get("name"), serial=config.get("serialNumber"), firmware=firmware)

        status, body = await self._request("GET", "/api/userdata")
        if status != 200 or not isinstance(body, dict):
            raise HubError(f"gateway info unavailable ({status})", hub=self.address, status=status)
        user_data = body.get("userData") or {}
        fw = (user_data.get("firmware") or {}).get("mainProcessor") or {}
        firmware = f"{fw.get('revision')}.{fw.get('subRevision')}.{fw.get('build')}" if fw else None
        return GatewayInfo(
            name=decode_name(user_data.get("hubName")),
            serial=user_data.get("serialNumber"),
            firmware=firmware,
        )
