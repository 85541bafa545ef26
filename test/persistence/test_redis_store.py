import math
import os
import typing as t
from unittest import TestCase, mock

import fakeredis
import redis

from entitystore.errors import EmptyKeyError, MalformedKeyError, NotFoundError, TransportError
from entitystore.fields import UInt
from entitystore.store.base import Entity
from entitystore.store.memory import InMemoryEntityStore
from entitystore.store.redis import MAX_ITEMS, RedisEntityStore


class Hacker(Entity):
    id: str = ""
    name: str = ""
    birthyear: int = 0
    height: float = 0.0
    is_active: bool = False
    followers: UInt = 0

    def get_key(self) -> str:
        return self.id

    def set_key(self, key: str):
        self.id = key


class Star(Entity):
    entity_name: t.ClassVar[t.Optional[str]] = "Star*"

    id: str = ""

    def get_key(self) -> str:
        return self.id

    def set_key(self, key: str):
        self.id = key


class StarX(Entity):
    id: str = ""

    def get_key(self) -> str:
        return self.id

    def set_key(self, key: str):
        self.id = key


def mock_connection(store_cls=RedisEntityStore):
    """Patches the store's connection so each test can script the Redis replies."""
    conn = mock.MagicMock()
    patcher = mock.patch.object(store_cls, "_connection")
    connection = patcher.start()
    connection.return_value.__enter__.return_value = conn
    return patcher, conn


class TestRedisEntityStore(TestCase):
    def setUp(self):
        self.server = fakeredis.FakeServer()
        self.pool = fakeredis.FakeRedis(server=self.server).connection_pool
        self.raw = redis.Redis(connection_pool=self.pool)
        self.db = RedisEntityStore(self.pool)

    def test_stored_format(self):
        hacker = Hacker(id="turing", name="Alan Turing", birthyear=-1912, height=math.pi, is_active=True, followers=7)
        self.db.write(hacker)
        self.assertEqual(
            self.raw.hgetall("Hacker:turing"),
            {
                b"id": b"turing",
                b"name": b"Alan Turing",
                b"birthyear": b"-1912",
                b"height": b"3.141592653589793",
                b"is_active": b"1",
                b"followers": b"7",
            },
        )

    def test_reads_hashes_written_by_others(self):
        self.raw.hset("Hacker:hopper", mapping={"name": "Grace Hopper", "is_active": "true", "unknown": "ignored"})
        hacker = self.db.read(Hacker(id="hopper"))
        self.assertEqual(hacker.name, "Grace Hopper")
        self.assertTrue(hacker.is_active)
        self.assertEqual(hacker.birthyear, 0)

    def test_namespaces(self):
        prod = RedisEntityStore(self.pool, namespace="prod")
        dev = RedisEntityStore(self.pool, namespace="dev")
        prod.write(Hacker(id="turing", name="Alan Turing"))
        self.assertEqual(self.raw.keys("*"), [b"prod:Hacker:turing"])
        self.assertEqual([h.id for h in prod.list(Hacker)], ["turing"])
        self.assertEqual(dev.list(Hacker), [])
        self.assertEqual(self.db.list(Hacker), [])
        with self.assertRaises(NotFoundError):
            dev.read(Hacker(id="turing"))

    def test_type_names_are_escaped(self):
        for db in [self.db, InMemoryEntityStore()]:
            db.write(Star(id="1"))
            db.write(StarX(id="2"))
            # Unescaped, the pattern `Star*:*` would also match `StarX:2`.
            self.assertEqual([s.id for s in db.list(Star)], ["1"])
            self.assertEqual([s.id for s in db.list(StarX)], ["2"])
        self.assertEqual(self.raw.exists("Star*:1"), 1)

    def test_list_spans_many_pages(self):
        db = RedisEntityStore(self.pool, page_size=10)
        num_items = 1001
        db.write_multiple([Hacker(name="...") for _ in range(num_items)])
        listed = db.list(Hacker)
        self.assertEqual(len(listed), num_items)
        self.assertEqual(len({h.id for h in listed}), num_items)

    def test_scan_loop(self):
        patcher, conn = mock_connection()
        self.addCleanup(patcher.stop)
        # Redis may return a key more than once during a scan.
        conn.scan.side_effect = [(7, [b"Hacker:a", b"Hacker:b"]), (3, []), (0, [b"Hacker:b", b"Hacker:c"])]
        hackers = self.db.list(Hacker)
        self.assertEqual([h.id for h in hackers], ["a", "b", "c"])
        self.assertEqual(
            conn.scan.call_args_list,
            [
                mock.call(cursor=0, match="Hacker:*", count=MAX_ITEMS),
                mock.call(cursor=7, match="Hacker:*", count=MAX_ITEMS),
                mock.call(cursor=3, match="Hacker:*", count=MAX_ITEMS),
            ],
        )

    def test_scan_runs_at_least_once(self):
        patcher, conn = mock_connection()
        self.addCleanup(patcher.stop)
        conn.scan.side_effect = [(0, [b"Hacker:only"])]
        self.assertEqual([h.id for h in self.db.list(Hacker)], ["only"])
        self.assertEqual(conn.scan.call_count, 1)

    def test_malformed_key(self):
        patcher, conn = mock_connection()
        self.addCleanup(patcher.stop)
        conn.scan.side_effect = [(0, [b"Hacker:ok", b"Other:bad"])]
        with self.assertRaises(MalformedKeyError):
            self.db.list(Hacker)

    def test_read_multiple_is_one_transaction(self):
        patcher = mock.patch.object(RedisEntityStore, "_pipeline")
        pipeline = patcher.start()
        self.addCleanup(patcher.stop)
        pipe = pipeline.return_value.__enter__.return_value
        pipe.execute.return_value = [{b"name": b"Ada"}, {b"name": b"Alan"}]
        got = self.db.read_multiple([Hacker(id="lovelace"), Hacker(id="turing")])
        pipeline.assert_called_once_with(transaction=True)
        self.assertEqual(pipe.hgetall.call_args_list, [mock.call("Hacker:lovelace"), mock.call("Hacker:turing")])
        pipe.execute.assert_called_once_with()
        self.assertEqual([h.name for h in got], ["Ada", "Alan"])

    def test_batches_use_one_connection(self):
        pool = redis.ConnectionPool(connection_class=fakeredis.FakeConnection, server=self.server, max_connections=1)
        db = RedisEntityStore(pool)
        hackers = [Hacker(name="Alan Turing"), Hacker(name="Grace Hopper")]
        db.write_multiple(hackers)
        got = db.read_multiple([Hacker(id=hacker.id) for hacker in hackers])
        self.assertEqual([h.name for h in got], ["Alan Turing", "Grace Hopper"])
        self.assertEqual(len(db.list(Hacker)), 2)
        self.assertEqual(db.delete_multiple(hackers), 2)
        self.assertEqual(len(pool._in_use_connections), 0)

    def test_partial_delete_multiple_counts_only(self):
        hacker = Hacker(name="Alan Turing")
        self.db.write(hacker)
        with self.assertRaises(NotFoundError) as ctx:
            self.db.delete_multiple([hacker, Hacker(id="never-written")])
        self.assertEqual((ctx.exception.deleted, ctx.exception.requested), (1, 2))
        self.assertEqual(ctx.exception.keys, [])

    def test_transport_errors(self):
        self.server.connected = False
        hacker = Hacker(id="turing", name="Alan Turing")
        calls = [
            lambda: self.db.write(hacker),
            lambda: self.db.write_multiple([hacker]),
            lambda: self.db.read(hacker),
            lambda: self.db.read_multiple([hacker]),
            lambda: self.db.delete(hacker),
            lambda: self.db.delete_multiple([hacker]),
            lambda: self.db.list(Hacker),
        ]
        for call in calls:
            with self.assertRaises(TransportError) as ctx:
                call()
            self.assertIsInstance(ctx.exception.__cause__, redis.RedisError)

    def test_empty_key_checked_before_connecting(self):
        self.server.connected = False
        with self.assertRaises(EmptyKeyError):
            self.db.read(Hacker())
        with self.assertRaises(EmptyKeyError):
            self.db.delete(Hacker())
        with self.assertRaises(EmptyKeyError):
            self.db.read_multiple([Hacker(id="turing"), Hacker()])

    def test_connections_are_released(self):
        hacker = Hacker(name="Alan Turing")
        self.db.write(hacker)
        self.db.read(hacker)
        self.db.write_multiple([hacker])
        self.db.read_multiple([hacker])
        self.db.list(Hacker)
        with self.assertRaises(NotFoundError):
            self.db.read(Hacker(id="missing"))
        self.db.delete(hacker)
        self.assertEqual(len(self.pool._in_use_connections), 0)

    def test_config(self):
        with self.assertRaises(ValueError):
            RedisEntityStore(self.pool, url="redis://localhost:6379/0")
        with self.assertRaises(ValueError):
            RedisEntityStore(self.pool, page_size=0)
        with mock.patch.dict(os.environ, {"REDIS_URL": "redis://:secret@example.com:6380/2"}):
            kwargs = RedisEntityStore()._pool.connection_kwargs
            self.assertEqual(
                (kwargs["host"], kwargs["port"], kwargs["db"], kwargs["password"]), ("example.com", 6380, 2, "secret")
            )
        with mock.patch.dict(os.environ):
            os.environ.pop("REDIS_URL", None)
            kwargs = RedisEntityStore()._pool.connection_kwargs
            self.assertEqual((kwargs["host"], kwargs["port"]), ("127.0.0.1", 6379))
        kwargs = RedisEntityStore(url="redis://cache:6390/1")._pool.connection_kwargs
        self.assertEqual((kwargs["host"], kwargs["port"], kwargs["db"]), ("cache", 6390, 1))
