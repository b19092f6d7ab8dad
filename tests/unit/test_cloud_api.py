"""Unit tests for cloud_api module.

Tests PowerViewCloudAPI login, token caching and cloud position writes.
"""

import datetime
import json
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from powerview_bridge.cloud_api import CloudToken, PowerViewCloudAPI
from powerview_bridge.const import POWERVIEW_CLOUD_BASES
from powerview_bridge.exceptions import CloudAuthenticationError, HubUnreachableError


def _resp(status, body=None):
    resp = MagicMock()
    resp.status = status
    resp.json = AsyncMock(return_value=body)
    return resp


def _token(**overrides):
    data = {
        "access_token": "tkn",
        "home_id": "home-1",
        "base_url": POWERVIEW_CLOUD_BASES[0],
        "issued_at": datetime.datetime.now(datetime.UTC),
    }
    data.update(overrides)
    return CloudToken(**data)


@pytest.fixture
def api(tmp_path):
    api = PowerViewCloudAPI(email="me@example.com", password="secret", auth_cache_file=str(tmp_path / "auth.json"))
    api.http_session = MagicMock()
    api.http_session.closed = False
    return api


class TestPowerViewCloudAPIInitialization:
    """Tests for construction and configuration"""

    def test_singleton(self):
        api1 = PowerViewCloudAPI()
        api2 = PowerViewCloudAPI()

        assert api1 is api2

    def test_configured(self):
        assert PowerViewCloudAPI(email="me@example.com", password="secret").configured is True
        assert PowerViewCloudAPI(email="me@example.com").configured is False

    @pytest.mark.asyncio
    async def test_close_session(self, api):
        session = api.http_session
        session.close = AsyncMock()

        await api.close()

        session.close.assert_awaited_once()
        assert api.http_session is None


class TestCloudToken:
    """Tests for token expiry"""

    def test_fresh_token_not_expired(self):
        assert _token().expired is False

    def test_old_token_expired(self):
        issued = datetime.datetime.now(datetime.UTC) - datetime.timedelta(days=2)

        assert _token(issued_at=issued).expired is True


class TestAuthentication:
    """Tests for login and the token cache file"""

    @pytest.mark.asyncio
    async def test_not_configured(self):
        api = PowerViewCloudAPI()

        with pytest.raises(CloudAuthenticationError):
            await api.authenticate()

    @pytest.mark.asyncio
    async def test_login_writes_cache(self, api, tmp_path):
        api.http_session.post = AsyncMock(
            return_value=_resp(200, {"accessToken": "abc", "homes": [{"id": 7}], "expiresIn": 3600})
        )

        token = await api.authenticate()

        assert token.access_token == "abc"
        assert token.home_id == "7"
        cached = json.loads((tmp_path / "auth.json").read_text())
        assert cached["access_token"] == "abc"
        assert "expires_at" not in cached

    @pytest.mark.asyncio
    async def test_falls_through_endpoints(self, api):
        api.http_session.post = AsyncMock(
            side_effect=[aiohttp.ClientConnectionError("refused"), _resp(200, {"accessToken": "abc", "homes": [{"id": "h"}]})]
        )

        token = await api.authenticate()

        assert token.base_url == POWERVIEW_CLOUD_BASES[1]

    @pytest.mark.asyncio
    async def test_every_endpoint_refuses(self, api):
        api.http_session.post = AsyncMock(return_value=_resp(403))

        with pytest.raises(CloudAuthenticationError):
            await api.authenticate()
        assert api.http_session.post.await_count == len(POWERVIEW_CLOUD_BASES)

    @pytest.mark.asyncio
    async def test_login_without_home_rejected(self, api):
        api.http_session.post = AsyncMock(return_value=_resp(200, {"accessToken": "abc", "homes": []}))

        with pytest.raises(CloudAuthenticationError):
            await api.authenticate()

    @pytest.mark.asyncio
    async def test_read_token_cache(self, api):
        await api.write_token_cache(_token(access_token="cached"))

        token = await api.read_token_cache()

        assert token.access_token == "cached"

    @pytest.mark.asyncio
    async def test_read_token_cache_missing(self, api):
        assert await api.read_token_cache() is None

    @pytest.mark.asyncio
    async def test_read_token_cache_corrupt(self, api, tmp_path):
        (tmp_path / "auth.json").write_text("{not json")

        assert await api.read_token_cache() is None


class TestSetShadePosition:
    """Tests for cloud position writes"""

    @pytest.mark.asyncio
    async def test_uses_cached_token(self, api):
        api.token_cache = _token()
        api.http_session.put = AsyncMock(return_value=_resp(200))

        assert await api.set_shade_position(168, 0.45) is True

        call = api.http_session.put.call_args
        assert call.args[0] == f"{POWERVIEW_CLOUD_BASES[0]}/v1/homes/home-1/shades/168/position"
        assert call.kwargs["json"] == {"position": 45}
        assert call.kwargs["headers"] == {"Authorization": "Bearer tkn"}

    @pytest.mark.asyncio
    async def test_reauthenticates_on_401(self, api):
        api.token_cache = _token()
        api.http_session.put = AsyncMock(side_effect=[_resp(401), _resp(204)])

        with patch.object(api, "authenticate", AsyncMock()) as mock_auth:
            mock_auth.side_effect = lambda: setattr(api, "token_cache", _token(access_token="new"))
            assert await api.set_shade_position(168, 0.5) is True

        mock_auth.assert_awaited_once()
        assert api.http_session.put.call_args.kwargs["headers"] == {"Authorization": "Bearer new"}

    @pytest.mark.asyncio
    async def test_refused(self, api):
        api.token_cache = _token()
        api.http_session.put = AsyncMock(return_value=_resp(400))

        assert await api.set_shade_position(168, 0.5) is False

    @pytest.mark.asyncio
    async def test_transport_error(self, api):
        api.token_cache = _token()
        api.http_session.put = AsyncMock(side_effect=aiohttp.ClientConnectionError("refused"))

        with pytest.raises(HubUnreachableError):
            await api.set_shade_position(168, 0.5)

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self, api):
        api.token_cache = _token()
        api.http_session.put = AsyncMock(return_value=_resp(503))

        with pytest.raises(HubUnreachableError) as exc_info:
            await api.set_shade_position(168, 0.5)
        assert exc_info.value.status == 503
