import os
import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from dotenv import dotenv_values

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from tokens import (
    Credential,
    EnvTokenStore,
    FileTokenStore,
    MemoryTokenStore,
    SqliteTokenStore,
    build_token_store,
)

SAMPLE = Credential("access-1", "refresh-1", 1_700_000_600_000)


class TokenStoreTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = Path(self._tmp.name)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    async def _assert_round_trip(self, store) -> None:
        self.assertTrue((await store.load()).is_empty)

        await store.save(SAMPLE)
        loaded = await store.load()
        self.assertEqual(loaded, SAMPLE)

        await store.save(loaded)
        self.assertEqual(await store.load(), SAMPLE)

        await store.clear()
        cleared = await store.load()
        self.assertIsNone(cleared.access_token)
        self.assertIsNone(cleared.refresh_token)

    async def test_memory_store(self) -> None:
        await self._assert_round_trip(MemoryTokenStore())

    async def test_file_store(self) -> None:
        await self._assert_round_trip(FileTokenStore(str(self.tmp / "state" / "tokens.json")))

    async def test_file_store_survives_reopen(self) -> None:
        path = str(self.tmp / "tokens.json")
        await FileTokenStore(path).save(SAMPLE)

        self.assertEqual(await FileTokenStore(path).load(), SAMPLE)

    async def test_file_store_ignores_corrupt_file(self) -> None:
        path = self.tmp / "tokens.json"
        path.write_text("{not json", encoding="utf-8")

        self.assertTrue((await FileTokenStore(str(path)).load()).is_empty)

    async def test_sqlite_store(self) -> None:
        await self._assert_round_trip(SqliteTokenStore(str(self.tmp / "tokens.db")))

    async def test_sqlite_store_keeps_single_row(self) -> None:
        db_path = str(self.tmp / "tokens.db")
        store = SqliteTokenStore(db_path)
        await store.save(SAMPLE)
        await store.save(Credential("access-2", "refresh-2", 5))

        self.assertEqual(await SqliteTokenStore(db_path).load(), Credential("access-2", "refresh-2", 5))

    async def test_env_store_writes_dotenv_file(self) -> None:
        env_file = str(self.tmp / ".env")
        with patch.dict(os.environ, {}, clear=False):
            for key in (EnvTokenStore.ACCESS_KEY, EnvTokenStore.REFRESH_KEY, EnvTokenStore.EXPIRES_KEY):
                os.environ.pop(key, None)
            await self._assert_round_trip(EnvTokenStore(env_file))

            await EnvTokenStore(env_file).save(SAMPLE)
            values = dotenv_values(env_file)

        self.assertEqual(values[EnvTokenStore.ACCESS_KEY], "access-1")
        self.assertEqual(values[EnvTokenStore.REFRESH_KEY], "refresh-1")
        self.assertEqual(values[EnvTokenStore.EXPIRES_KEY], "1700000600000")

    async def test_env_store_reads_environment(self) -> None:
        env = {
            EnvTokenStore.ACCESS_KEY: "a",
            EnvTokenStore.REFRESH_KEY: "r",
            EnvTokenStore.EXPIRES_KEY: "not-a-number",
        }
        with patch.dict(os.environ, env):
            credential = await EnvTokenStore().load()

        self.assertEqual(credential, Credential("a", "r", 0))

    def test_build_token_store(self) -> None:
        self.assertIsInstance(build_token_store("memory"), MemoryTokenStore)
        self.assertIsInstance(build_token_store("file", token_file="t.json"), FileTokenStore)
        self.assertIsInstance(build_token_store("env"), EnvTokenStore)
        self.assertIsInstance(build_token_store("sqlite", db_path="t.db"), SqliteTokenStore)
        with self.assertRaises(ValueError):
            build_token_store("redis")


if __name__ == "__main__":
    unittest.main()
