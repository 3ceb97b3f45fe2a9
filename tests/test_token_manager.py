import asyncio
import sys
import unittest
import urllib.parse
from pathlib import Path
from unittest.mock import AsyncMock, patch

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

import tokens
from fakes import FakeResponse, FakeSession
from tokens import (
    Credential,
    ExchangeFailedError,
    MemoryTokenStore,
    NoRefreshTokenError,
    RefreshRejectedError,
    TokenManager,
)

NOW = 1_700_000_000.0
NOW_MS = int(NOW * 1000)


class RecordingStore(MemoryTokenStore):
    def __init__(self, credential=None):
        super().__init__(credential)
        self.saved: list[Credential] = []

    async def save(self, credential: Credential) -> None:
        self.saved.append(Credential(**credential.to_dict()))
        await super().save(credential)


class TokenManagerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.now = NOW
        self.store = RecordingStore()
        self.manager = TokenManager(
            "client",
            "secret",
            "https://bot.example/oauth/callback",
            self.store,
            clock=lambda: self.now,
        )
        self.manager._post_token = AsyncMock()

    async def _load(self, credential: Credential) -> None:
        await self.store.save(credential)
        self.store.saved.clear()
        await self.manager.load()

    async def test_fresh_token_needs_no_network(self) -> None:
        await self._load(Credential("access", "refresh", NOW_MS + 10_001))

        token = await self.manager.ensure_valid_access_token()

        self.assertEqual(token, "access")
        self.manager._post_token.assert_not_awaited()
        self.assertEqual(self.store.saved, [])

    async def test_token_inside_margin_is_refreshed_and_persisted(self) -> None:
        await self._load(Credential("old-access", "old-refresh", NOW_MS + 10_000))
        self.manager._post_token.return_value = (
            200,
            {"access_token": "new-access", "refresh_token": "new-refresh", "expires_in": 600},
        )

        token = await self.manager.ensure_valid_access_token()

        self.assertEqual(token, "new-access")
        self.manager._post_token.assert_awaited_once_with(
            {"grant_type": "refresh_token", "refresh_token": "old-refresh"}
        )
        self.assertEqual(
            self.store.saved,
            [Credential("new-access", "new-refresh", NOW_MS + 600_000)],
        )
        self.assertEqual(await self.store.load(), Credential("new-access", "new-refresh", NOW_MS + 600_000))

    async def test_refresh_keeps_previous_refresh_token_when_not_rotated(self) -> None:
        await self._load(Credential("old-access", "keep-me", NOW_MS - 1))
        self.manager._post_token.return_value = (200, {"access_token": "new-access"})

        await self.manager.ensure_valid_access_token()

        saved = self.store.saved[-1]
        self.assertEqual(saved.refresh_token, "keep-me")
        self.assertEqual(saved.expires_at_ms, NOW_MS + 3600 * 1000)

    async def test_configured_margin_and_lifetime(self) -> None:
        manager = TokenManager(
            "client", "secret", "https://bot.example/cb", self.store,
            refresh_margin=60, default_lifetime=900, clock=lambda: self.now,
        )
        manager._post_token = AsyncMock(return_value=(200, {"access_token": "new"}))
        await self.store.save(Credential("old", "refresh", NOW_MS + 30_000))
        self.store.saved.clear()
        await manager.load()

        self.assertEqual(await manager.ensure_valid_access_token(), "new")
        self.assertEqual(self.store.saved[-1].expires_at_ms, NOW_MS + 900_000)

    async def test_missing_access_token_with_refresh_token_refreshes(self) -> None:
        await self._load(Credential(None, "refresh", 0))
        self.manager._post_token.return_value = (200, {"access_token": "a", "expires_in": 3600})

        self.assertEqual(await self.manager.ensure_valid_access_token(), "a")

    async def test_no_refresh_token_raises(self) -> None:
        await self._load(Credential("expired", None, NOW_MS - 1))

        with self.assertRaises(NoRefreshTokenError):
            await self.manager.ensure_valid_access_token()
        self.manager._post_token.assert_not_awaited()

    async def test_invalid_grant_wipes_credential(self) -> None:
        await self._load(Credential("old", "revoked", NOW_MS - 1))
        self.manager._post_token.return_value = (400, {"error": "invalid_grant"})

        with self.assertRaises(RefreshRejectedError):
            await self.manager.ensure_valid_access_token()

        stored = await self.store.load()
        self.assertIsNone(stored.access_token)
        self.assertIsNone(stored.refresh_token)
        self.assertTrue(self.manager.credential.is_empty)
        self.assertFalse(self.manager.has_credential)

    async def test_server_error_keeps_credential(self) -> None:
        await self._load(Credential("old", "refresh", NOW_MS - 1))
        self.manager._post_token.return_value = (503, {"raw": "unavailable"})

        with self.assertRaises(ExchangeFailedError) as ctx:
            await self.manager.ensure_valid_access_token()

        self.assertEqual(ctx.exception.status, 503)
        self.assertEqual((await self.store.load()).refresh_token, "refresh")
        self.assertEqual(self.store.saved, [])

    async def test_concurrent_callers_share_one_refresh(self) -> None:
        await self._load(Credential("old", "refresh", NOW_MS - 1))
        release = asyncio.Event()

        async def slow_post(form):
            await release.wait()
            return 200, {"access_token": "shared", "refresh_token": "rotated", "expires_in": 3600}

        self.manager._post_token = AsyncMock(side_effect=slow_post)

        send_side = asyncio.create_task(self.manager.ensure_valid_access_token())
        reconnect_side = asyncio.create_task(self.manager.ensure_valid_access_token())
        await asyncio.sleep(0)
        release.set()
        results = await asyncio.gather(send_side, reconnect_side)

        self.assertEqual(results, ["shared", "shared"])
        self.assertEqual(self.manager._post_token.await_count, 1)

    async def test_complete_authorization_stores_credential(self) -> None:
        self.manager._post_token.return_value = (
            200,
            {"access_token": "a", "refresh_token": "r", "expires_in": 7200},
        )

        credential = await self.manager.complete_authorization("the-code")

        self.assertEqual(credential, Credential("a", "r", NOW_MS + 7_200_000))
        self.assertEqual(self.store.saved, [credential])
        form = self.manager._post_token.await_args.args[0]
        self.assertEqual(form["grant_type"], "authorization_code")
        self.assertEqual(form["code"], "the-code")
        self.assertEqual(form["redirect_uri"], "https://bot.example/oauth/callback")

    async def test_complete_authorization_failure(self) -> None:
        self.manager._post_token.return_value = (401, {"error": "invalid_client"})

        with self.assertRaises(ExchangeFailedError) as ctx:
            await self.manager.complete_authorization("bad")

        self.assertEqual(ctx.exception.status, 401)
        self.assertEqual(self.store.saved, [])

    async def test_client_credentials_not_persisted(self) -> None:
        self.manager._post_token.return_value = (200, {"access_token": "app-token"})

        token = await self.manager.fetch_client_credentials()

        self.assertEqual(token, "app-token")
        self.assertEqual(self.store.saved, [])
        self.manager._post_token.assert_awaited_once_with({"grant_type": "client_credentials"})

    async def test_clear_wipes_store(self) -> None:
        await self._load(Credential("a", "r", NOW_MS + 60_000))

        await self.manager.clear()

        self.assertTrue((await self.store.load()).is_empty)


class OAuthStateTests(unittest.TestCase):
    def setUp(self) -> None:
        self.now = NOW
        self.manager = TokenManager(
            "client", "secret", "https://bot.example/cb", MemoryTokenStore(), clock=lambda: self.now
        )

    def test_auth_url_carries_client_and_state(self) -> None:
        url = self.manager.generate_auth_url(message="hi", target="Skrymi", state="abc")

        parsed = urllib.parse.urlparse(url)
        query = urllib.parse.parse_qs(parsed.query)
        self.assertEqual(f"{parsed.scheme}://{parsed.netloc}{parsed.path}", "https://dlive.tv/o/authorize")
        self.assertEqual(query["client_id"], ["client"])
        self.assertEqual(query["response_type"], ["code"])
        self.assertEqual(query["scope"], ["identity chat:write"])
        self.assertEqual(query["state"], ["abc"])

    def test_consume_state_returns_pending_message_once(self) -> None:
        self.manager.generate_auth_url(message="hi", target="Skrymi", state="abc")

        data = self.manager.consume_state("abc")

        self.assertEqual(data["message"], "hi")
        self.assertEqual(data["target"], "Skrymi")
        with self.assertRaises(ValueError):
            self.manager.consume_state("abc")

    def test_expired_state_rejected(self) -> None:
        self.manager.generate_auth_url(state="abc")
        self.now += tokens.TokenManager.OAUTH_STATE_EXPIRY + 1

        with self.assertRaises(ValueError):
            self.manager.consume_state("abc")

    def test_requires_client_credentials(self) -> None:
        with self.assertRaises(ValueError):
            TokenManager("", "secret", "uri", MemoryTokenStore())


class TokenEndpointTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.manager = TokenManager(
            "client", "secret", "https://bot.example/cb", MemoryTokenStore(),
            token_url="https://auth.example/o/token", clock=lambda: NOW,
        )
        patcher = patch.object(tokens.aiohttp, "ClientSession", FakeSession)
        patcher.start()
        self.addCleanup(patcher.stop)

    async def test_posts_form_with_basic_auth(self) -> None:
        FakeSession.reset(FakeResponse(200, {"access_token": "a", "refresh_token": "r", "expires_in": 60}))

        await self.manager.complete_authorization("code-1")

        url, kwargs = FakeSession.calls[0]
        self.assertEqual(url, "https://auth.example/o/token")
        self.assertEqual(kwargs["auth"], tokens.aiohttp.BasicAuth("client", "secret"))
        self.assertEqual(kwargs["data"]["grant_type"], "authorization_code")
        self.assertEqual(self.manager.credential, Credential("a", "r", NOW_MS + 60_000))

    async def test_invalid_grant_described_in_message(self) -> None:
        await self.manager.store.save(Credential("a", "r", 0))
        await self.manager.load()
        FakeSession.reset(FakeResponse(401, {"message": "invalid_grant: refresh token expired"}))

        with self.assertRaises(RefreshRejectedError):
            await self.manager.ensure_valid_access_token()
        self.assertTrue((await self.manager.store.load()).is_empty)

    async def test_network_error_is_exchange_failure(self) -> None:
        FakeSession.reset(tokens.aiohttp.ClientConnectionError("down"))

        with self.assertRaises(ExchangeFailedError) as ctx:
            await self.manager.complete_authorization("code-1")
        self.assertEqual(ctx.exception.status, 0)

    async def test_non_json_body(self) -> None:
        FakeSession.reset(FakeResponse(502, "<html>bad gateway</html>"))

        with self.assertRaises(ExchangeFailedError) as ctx:
            await self.manager.complete_authorization("code-1")
        self.assertEqual(ctx.exception.body, {"raw": "<html>bad gateway</html>"})


if __name__ == "__main__":
    unittest.main()
