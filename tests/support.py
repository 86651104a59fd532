"""In-memory stand-in for MySQLConnectionProvider used by the unit tests."""

import copy
from contextlib import contextmanager

from db import DatabaseUnavailable
from line_items import (
	DELETE_BY_ID_SQL,
	DELETE_BY_REFERENCE_SQL,
	INSERT_COLUMNS,
	INSERT_SQL,
	UPDATE_COLUMNS,
	UPDATE_SQL,
)


class FakeDatabaseError(Exception):
	pass


class FakeTransactionLost(FakeDatabaseError):
	"""Stands in for a deadlock or dropped connection."""


def _raise_injected(failure, message):
	if isinstance(failure, BaseException):
		raise failure
	raise FakeDatabaseError(message)


class FakeCursor:
	def __init__(self, db):
		self.db = db
		self.rowcount = -1
		self.lastrowid = None
		self.description = None
		self._rows = []

	def execute(self, sql, params=()):
		params = tuple(params)
		self.db.executed.append((sql, params))
		failure = self.db.fail_when(sql, params) if self.db.fail_when is not None else None
		if failure:
			_raise_injected(failure, f"Data truncated for column (fake) in {sql.split()[0]}")

		if sql == INSERT_SQL:
			item_id = self.db.next_id
			self.db.next_id += 1
			self.db.rows[item_id] = dict(zip(INSERT_COLUMNS, params))
			self.lastrowid = item_id
			self.rowcount = 1
		elif sql == UPDATE_SQL:
			item_id = params[-1]
			row = self.db.rows.get(item_id)
			if row is None:
				self.rowcount = 0
			else:
				row.update(zip(UPDATE_COLUMNS, params[:-1]))
				self.rowcount = 1
		elif sql == DELETE_BY_ID_SQL:
			self.rowcount = 1 if self.db.rows.pop(params[0], None) is not None else 0
		elif sql == DELETE_BY_REFERENCE_SQL:
			order_ref, order_id, reference_code = params
			matches = [
				item_id
				for item_id, row in self.db.rows.items()
				if row.get("REV_COD") == order_ref
				and row.get("PED_COD") == order_id
				and row.get("CUP_REF") == reference_code
				and row.get("IPE_DFP") == 1
			]
			if matches:
				del self.db.rows[max(matches)]
			self.rowcount = 1 if matches else 0
		else:
			self._rows = []
			for fragment, rows in self.db.canned.items():
				if fragment in sql:
					self._rows = [dict(r) for r in rows]
					break
			self.rowcount = len(self._rows)

	def callproc(self, name, args=()):
		self.db.calls.append((name, tuple(args)))
		failure = self.db.fail_when(name, tuple(args)) if self.db.fail_when is not None else None
		if failure:
			_raise_injected(failure, f"PROCEDURE {name} failed (fake)")
		self._rows = [dict(r) for r in self.db.procedures.get(name, [])]
		return args

	def fetchone(self):
		if not self._rows:
			return None
		return self._rows.pop(0)

	def fetchall(self):
		rows, self._rows = self._rows, []
		return tuple(rows)

	def nextset(self):
		return None

	def close(self):
		pass


class FakeProvider:
	statement_errors = (FakeDatabaseError,)
	transaction_errors = (FakeTransactionLost,)

	def __init__(self):
		self.rows = {}
		self.next_id = 1000
		self.executed = []
		self.calls = []
		self.canned = {}
		self.procedures = {}
		self.fail_when = None
		self.unavailable = False
		self.transactions = 0
		self.commits = 0
		self.rollbacks = 0
		self.reads = 0
		self.pings = 0

	def seed(self, item_id, **values):
		row = {col: None for col in INSERT_COLUMNS}
		row.update({"IPE_STA": 0, "IPE_DFP": 0, "REMARCADO_PROX_MES": 0})
		row.update(values)
		self.rows[item_id] = row
		return item_id

	def _check(self):
		if self.unavailable:
			raise DatabaseUnavailable("Database unavailable")

	@contextmanager
	def transaction(self):
		self._check()
		self.transactions += 1
		snapshot = copy.deepcopy(self.rows)
		cursor = FakeCursor(self)
		try:
			yield cursor
		except BaseException:
			self.rows = snapshot
			self.rollbacks += 1
			raise
		else:
			self.commits += 1

	@contextmanager
	def cursor(self):
		self._check()
		self.reads += 1
		yield FakeCursor(self)

	def ping(self):
		self._check()
		self.pings += 1
		return True

	def close(self):
		pass
