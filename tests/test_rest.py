import aiohttp
import pytest

from common.errors import (
    FetchError,
    MirrorError,
    NotFound,
    PermissionDenied,
    RateLimited,
    TransientNetworkError,
)
from listener.rest import SourceRestClient, random_headers


class FakeResponse:
    def __init__(self, status, body=None):
        self.status = status
        self.body = body

    async def json(self, content_type=None):
        return self.body

    async def text(self):
        return str(self.body or "")


class _Request:
    def __init__(self, outcome):
        self.outcome = outcome

    async def __aenter__(self):
        if isinstance(self.outcome, BaseException):
            raise self.outcome
        return self.outcome

    async def __aexit__(self, *exc):
        return False


class FakeSession:
    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = []
        self.closed = False

    def get(self, url, headers=None, timeout=None):
        self.calls.append((url, headers))
        return _Request(self.outcomes.pop(0))

    async def close(self):
        self.closed = True


def make_client(*outcomes):
    session = FakeSession(*outcomes)
    client = SourceRestClient(session, api_base="https://api.test/v10")
    client.rate_limit_delay = 0
    client.retry_delay = 0
    client.jitter_scale = 0
    return client, session


class TestFetchWithRetry:
    @pytest.mark.asyncio
    async def test_returns_json(self):
        client, session = make_client(FakeResponse(200, {"id": "1"}))
        assert await client.fetch_with_retry("https://api.test/v10/x", "tok") == {"id": "1"}
        assert len(session.calls) == 1

    @pytest.mark.asyncio
    async def test_no_content(self):
        client, _ = make_client(FakeResponse(204))
        assert await client.fetch_with_retry("https://api.test/v10/x", "tok") is None

    @pytest.mark.asyncio
    async def test_retries_rate_limit_then_succeeds(self):
        client, session = make_client(FakeResponse(429), FakeResponse(429), FakeResponse(200, []))
        assert await client.fetch_with_retry("https://api.test/v10/x", "tok") == []
        assert len(session.calls) == 3

    @pytest.mark.asyncio
    async def test_rate_limit_retries_exhausted(self):
        client, session = make_client(FakeResponse(429), FakeResponse(429), FakeResponse(429))
        with pytest.raises(RateLimited):
            await client.fetch_with_retry("https://api.test/v10/x", "tok")
        assert len(session.calls) == 3

    @pytest.mark.asyncio
    async def test_service_unavailable_retries_exhausted(self):
        client, session = make_client(FakeResponse(503), FakeResponse(503))
        with pytest.raises(TransientNetworkError) as exc:
            await client.fetch_with_retry("https://api.test/v10/x", "tok", max_retries=1)
        assert not isinstance(exc.value, RateLimited)
        assert exc.value.status == 503
        assert len(session.calls) == 2

    @pytest.mark.asyncio
    async def test_forbidden_is_not_retried(self):
        client, session = make_client(FakeResponse(403, "Missing Access"), FakeResponse(200, {}))
        with pytest.raises(PermissionDenied) as exc:
            await client.fetch_with_retry("https://api.test/v10/x", "tok")
        assert exc.value.status == 403
        assert len(session.calls) == 1

    @pytest.mark.asyncio
    async def test_other_status_raises_fetch_error(self):
        client, session = make_client(FakeResponse(500, "oops"))
        with pytest.raises(FetchError) as exc:
            await client.fetch_with_retry("https://api.test/v10/x", "tok")
        assert exc.value.status == 500
        assert len(session.calls) == 1

    @pytest.mark.asyncio
    async def test_connection_reset_is_retried(self):
        client, session = make_client(ConnectionResetError("ECONNRESET"), FakeResponse(200, {"ok": 1}))
        assert await client.fetch_with_retry("https://api.test/v10/x", "tok") == {"ok": 1}
        assert len(session.calls) == 2

    @pytest.mark.asyncio
    async def test_transient_retries_exhausted(self):
        client, session = make_client(
            aiohttp.ClientConnectionError("down"),
            aiohttp.ClientConnectionError("down"),
            aiohttp.ClientConnectionError("down"),
        )
        with pytest.raises(TransientNetworkError):
            await client.fetch_with_retry("https://api.test/v10/x", "tok")
        assert len(session.calls) == 3

    @pytest.mark.asyncio
    async def test_sends_bot_credential(self):
        client, session = make_client(FakeResponse(200, {}))
        await client.fetch_with_retry("https://api.test/v10/x", "secret")
        headers = session.calls[0][1]
        assert headers["Authorization"] == "Bot secret"
        assert "User-Agent" in headers


class TestCallSites:
    @pytest.mark.asyncio
    async def test_fetch_channel_builds_entity(self):
        client, session = make_client(FakeResponse(200, {"id": "5", "name": "general", "type": 0, "guild_id": "1"}))
        entity = await client.fetch_channel(5, "tok")
        assert entity.name == "general"
        assert session.calls[0][0] == "https://api.test/v10/channels/5"

    @pytest.mark.asyncio
    async def test_failed_cache_short_circuits(self):
        client, session = make_client(FakeResponse(404, "Unknown Channel"))
        with pytest.raises(NotFound):
            await client.fetch_channel(5, "tok")
        with pytest.raises(NotFound):
            await client.fetch_channel(5, "tok")
        with pytest.raises(NotFound):
            await client.test_channel_access(5, "tok")
        assert len(session.calls) == 1
        assert client.failed.get(5) == 404

    @pytest.mark.asyncio
    async def test_access_check_records_denial(self):
        client, session = make_client(FakeResponse(403, "Missing Access"))
        with pytest.raises(PermissionDenied):
            await client.test_channel_access(6, "tok")
        assert client.failed.get(6) == 403
        with pytest.raises(PermissionDenied):
            await client.test_channel_access(6, "tok")
        with pytest.raises(PermissionDenied):
            await client.fetch_channel(6, "tok")
        assert len(session.calls) == 1

    @pytest.mark.asyncio
    async def test_fetch_channel_unmirrored_kind(self):
        client, _ = make_client(FakeResponse(200, {"id": "5", "name": "gallery", "type": 16}))
        with pytest.raises(MirrorError):
            await client.fetch_channel(5, "tok")

    @pytest.mark.asyncio
    async def test_guild_channels_retry_once(self):
        client, session = make_client(FakeResponse(503), FakeResponse(503))
        with pytest.raises(TransientNetworkError):
            await client.fetch_guild_channels(1, "tok")
        assert len(session.calls) == 2

    @pytest.mark.asyncio
    async def test_guild_channels_skips_unknown_types(self):
        client, _ = make_client(
            FakeResponse(200, [{"id": "1", "name": "a", "type": 0}, {"id": "2", "name": "b", "type": 99}])
        )
        channels = await client.fetch_guild_channels(1, "tok")
        assert [c.id for c in channels] == [1]

    @pytest.mark.asyncio
    async def test_channel_access_check(self):
        client, session = make_client(FakeResponse(200, []), FakeResponse(403, "no"))
        assert await client.test_channel_access(5, "tok")
        with pytest.raises(PermissionDenied):
            await client.test_channel_access(6, "tok")
        assert session.calls[0][0].endswith("/channels/5/messages?limit=1")

    @pytest.mark.asyncio
    async def test_close(self):
        client, session = make_client()
        await client.close()
        assert session.closed
        assert client.session is None


def test_random_headers_shape():
    h = random_headers("tok")
    for key in ("Accept-Language", "Accept-Encoding", "Cache-Control", "DNT", "Sec-Fetch-Mode"):
        assert key in h
