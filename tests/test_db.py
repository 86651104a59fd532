import unittest

import MySQLdb
from flask import Flask

from db import DatabaseUnavailable, MySQLConnectionProvider


class FakeConnection:
	def __init__(self, number):
		self.number = number
		self.ping_error = None
		self.closed = False
		self.pings = 0
		self.commits = 0
		self.rollbacks = 0

	def ping(self):
		self.pings += 1
		if self.ping_error is not None:
			raise self.ping_error

	def cursor(self):
		return FakeCursor()

	def commit(self):
		self.commits += 1

	def rollback(self):
		self.rollbacks += 1

	def close(self):
		self.closed = True


class FakeCursor:
	def execute(self, sql, params=()):
		pass

	def fetchall(self):
		return [(1,)]

	def close(self):
		pass


class PoolTests(unittest.TestCase):
	def setUp(self):
		self.opened = []
		self.connect_error = None
		self.provider = MySQLConnectionProvider(Flask(__name__), pool_size=1, creator=self._create)

	def tearDown(self):
		self.provider.close()

	def _create(self):
		if self.connect_error is not None:
			raise self.connect_error
		conn = FakeConnection(len(self.opened))
		self.opened.append(conn)
		return conn

	def test_connection_is_reused(self):
		for _ in range(3):
			self.assertTrue(self.provider.ping())
		self.assertEqual(len(self.opened), 1)
		self.assertEqual(self.opened[0].pings, 2)

	def test_stale_connection_is_replaced(self):
		self.provider.ping()
		self.opened[0].ping_error = MySQLdb.OperationalError(2006, "MySQL server has gone away")
		with self.provider.connection() as conn:
			self.assertEqual(conn.number, 1)
		self.assertTrue(self.opened[0].closed)
		self.assertEqual(len(self.opened), 2)

	def test_transaction_commits(self):
		with self.provider.transaction() as cur:
			cur.execute("UPDATE CAD_IPE SET IPE_STA=%s WHERE IPE_COD=%s", (2, 10))
		self.assertEqual(self.opened[0].commits, 1)

	def test_transaction_rolls_back_on_error(self):
		with self.assertRaises(ValueError):
			with self.provider.transaction():
				raise ValueError("boom")
		self.assertEqual(self.opened[0].commits, 0)
		self.assertGreaterEqual(self.opened[0].rollbacks, 1)
		self.assertFalse(self.opened[0].closed)

	def test_lost_connection_is_discarded(self):
		with self.assertRaises(MySQLdb.OperationalError):
			with self.provider.connection():
				raise MySQLdb.OperationalError(2013, "Lost connection to MySQL server during query")
		self.assertTrue(self.opened[0].closed)
		with self.provider.connection() as conn:
			self.assertEqual(conn.number, 1)

	def test_connect_failure_is_unavailable(self):
		self.connect_error = MySQLdb.OperationalError(2003, "Can't connect to MySQL server")
		with self.assertRaises(DatabaseUnavailable):
			self.provider.ping()

	def test_close_releases_idle_connections(self):
		self.provider.ping()
		self.provider.close()
		self.assertTrue(self.opened[0].closed)
		with self.assertRaises(DatabaseUnavailable):
			with self.provider.connection():
				pass


if __name__ == "__main__":
	unittest.main()
