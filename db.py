from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

import MySQLdb
from flask import Flask, current_app
from flask_mysqldb import MySQL
from sqlalchemy.dialects.mysql import mysqldb
from sqlalchemy.pool import QueuePool


logger = logging.getLogger(__name__)

EXTENSION_KEY = "line_item_db"


class DatabaseUnavailable(Exception):
	"""No healthy connection could be obtained."""


class MySQLConnectionProvider:
	"""Pooled MySQL connections built from Flask-MySQLdb's settings.

	Connections come from a SQLAlchemy ``QueuePool`` of ``MYSQL_POOL_SIZE``
	raw MySQLdb connections, pinged before reuse and reopened when the ping
	fails. By default they are opened with the app's ``MYSQL_*`` config;
	``creator`` replaces that factory.

	``transaction()`` yields a cursor and commits on a clean exit; any
	exception rolls the connection back before it is returned to the pool.
	"""

	statement_errors = (MySQLdb.Error,)
	# after one of these the server has discarded the whole transaction
	transaction_errors = (MySQLdb.OperationalError,)

	def __init__(
		self,
		app: Optional[Flask] = None,
		*,
		pool_size: Optional[int] = None,
		creator: Optional[Callable[[], Any]] = None,
	) -> None:
		self._mysql = MySQL()
		self._pool_size = pool_size
		self._creator = creator
		self._pool: Optional[QueuePool] = None
		if app is not None:
			self.init_app(app)

	def init_app(self, app: Flask) -> None:
		self._mysql.init_app(app)
		if self._pool_size is None:
			self._pool_size = int(app.config.get("MYSQL_POOL_SIZE", 5))
		self._pool = QueuePool(
			self._creator or self._connect,
			pool_size=max(self._pool_size, 1),
			pre_ping=True,
			dialect=mysqldb.dialect(dbapi=MySQLdb),
		)
		app.extensions[EXTENSION_KEY] = self

	def _connect(self) -> Any:
		cfg = current_app.config
		conn = self._mysql.connect
		logger.info(
			"Opened MySQL connection %s@%s:%s/%s",
			cfg.get("MYSQL_USER"),
			cfg.get("MYSQL_HOST"),
			cfg.get("MYSQL_PORT"),
			cfg.get("MYSQL_DB"),
		)
		return conn

	@contextmanager
	def connection(self) -> Iterator[Any]:
		if self._pool is None:
			raise DatabaseUnavailable("Connection provider is not open")
		try:
			conn = self._pool.connect()
		except MySQLdb.Error as exc:
			logger.error("Could not connect to MySQL: %s", exc)
			raise DatabaseUnavailable("Database unavailable") from exc
		try:
			yield conn
		except MySQLdb.OperationalError as exc:
			conn.invalidate(exc)
			raise
		finally:
			conn.close()

	@contextmanager
	def cursor(self) -> Iterator[Any]:
		with self.connection() as conn:
			cur = conn.cursor()
			try:
				yield cur
			finally:
				cur.close()

	@contextmanager
	def transaction(self) -> Iterator[Any]:
		with self.connection() as conn:
			cur = conn.cursor()
			try:
				yield cur
			except BaseException:
				try:
					conn.rollback()
				except MySQLdb.Error:
					logger.exception("Rollback failed")
				raise
			else:
				conn.commit()
			finally:
				cur.close()

	def ping(self) -> bool:
		with self.cursor() as cur:
			cur.execute("SELECT 1")
			cur.fetchall()
		return True

	def close(self) -> None:
		if self._pool is None:
			return
		self._pool.dispose()
		self._pool = None
		logger.info("Closed MySQL connection pool")


def get_provider(app: Flask) -> Any:
	return app.extensions[EXTENSION_KEY]


def fetchone_dict(cursor) -> Optional[Dict[str, Any]]:
	row = cursor.fetchone()
	if row is None:
		return None
	if isinstance(row, dict):
		return row
	# plain tuples unless MYSQL_CURSORCLASS is DictCursor
	desc = [col[0] for col in cursor.description]
	return dict(zip(desc, row))


def fetchall_dict(cursor) -> List[Dict[str, Any]]:
	rows = cursor.fetchall() or []
	if rows and isinstance(rows[0], dict):
		return list(rows)
	if not rows or cursor.description is None:
		return []
	desc = [col[0] for col in cursor.description]
	return [dict(zip(desc, r)) for r in rows]


def call_procedure(cursor, name: str, args: Sequence[Any] = ()) -> List[Dict[str, Any]]:
	"""Run a stored procedure and return the rows of its first result set."""
	cursor.callproc(name, tuple(args))
	rows = fetchall_dict(cursor)
	# remaining result sets must be drained before the cursor is reused
	while cursor.nextset():
		pass
	return rows
