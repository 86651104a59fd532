"""Applies a batch of line-item change requests to the ``CAD_IPE`` table.

Each request is planned first (parsed, classified and turned into one fixed
statement), then every planned statement runs in array order on a single
transaction taken from the connection provider.

Two policies are available:

``atomic`` (default)
	Any request that fails planning rejects the whole batch before the
	database is touched. The first statement error rolls back everything
	applied so far and the call fails.

``tolerant``
	Planning and statement failures are recorded per item and processing
	continues; the transaction commits whatever succeeded. MySQL rolls back
	only the failing statement, so earlier items stay applied. Errors that
	end the transaction itself (deadlock, lost connection) cannot be
	tolerated: the batch is rolled back and the call fails as under atomic.

An update or delete that matches no row is a soft warning, never a failure.
Isolation between concurrent calls is whatever the database default
isolation level provides.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from line_items import (
	Action,
	ItemRejected,
	LineItemChangeRequest,
	LineItemCommand,
	StatusCodes,
	ValidationError,
	build_command,
	item_identity,
)


logger = logging.getLogger(__name__)


class ReconcilePolicy(str, Enum):
	ATOMIC = "atomic"
	TOLERANT = "tolerant"

	@classmethod
	def parse(cls, value: Any) -> "ReconcilePolicy":
		if isinstance(value, cls):
			return value
		try:
			return cls(str(value).strip().lower())
		except ValueError:
			raise ValueError(f"Unknown reconcile policy {value!r}; expected 'atomic' or 'tolerant'")


class EmptyBatch(Exception):
	pass


@dataclass
class ItemFailure:
	index: int
	kind: str
	message: str
	item: Dict[str, Any] = field(default_factory=dict)

	def to_dict(self) -> Dict[str, Any]:
		return {"index": self.index, "kind": self.kind, "error": self.message, "item": self.item}


class BatchRejected(Exception):
	"""Raised under the atomic policy when any request fails planning."""

	def __init__(self, failures: List[ItemFailure]) -> None:
		super().__init__(f"{len(failures)} item(s) could not be reconciled")
		self.failures = failures


class ItemStatementError(Exception):
	"""The database rejected an item's statement; the batch was rolled back."""

	def __init__(self, index: int, action: Action, item: Dict[str, Any]) -> None:
		super().__init__(f"{action.value} failed for item {index}")
		self.index = index
		self.action = action
		self.item = item


@dataclass
class PlannedItem:
	index: int
	request: LineItemChangeRequest
	command: LineItemCommand
	identity: Dict[str, Any]


@dataclass
class ReconciliationResult:
	policy: ReconcilePolicy
	inserted: List[Dict[str, Any]] = field(default_factory=list)
	updated: List[Dict[str, Any]] = field(default_factory=list)
	deleted: List[Dict[str, Any]] = field(default_factory=list)
	warnings: List[Dict[str, Any]] = field(default_factory=list)
	failures: List[ItemFailure] = field(default_factory=list)

	def to_dict(self) -> Dict[str, Any]:
		payload: Dict[str, Any] = {
			"success": True,
			"inserted": len(self.inserted),
			"updated": len(self.updated),
			"deleted": len(self.deleted),
			"details": {
				"inserted": list(self.inserted),
				"updated": list(self.updated),
				"deleted": list(self.deleted),
			},
			"warnings": list(self.warnings),
		}
		if self.policy is ReconcilePolicy.TOLERANT:
			ordered = sorted(self.failures, key=lambda f: f.index)
			payload["failures"] = [f.to_dict() for f in ordered]
		return payload


class LineItemReconciler:
	def __init__(
		self,
		provider: Any,
		*,
		policy: ReconcilePolicy = ReconcilePolicy.ATOMIC,
		status_codes: StatusCodes = StatusCodes(),
	) -> None:
		self.provider = provider
		self.policy = ReconcilePolicy.parse(policy)
		self.status_codes = status_codes

	def plan(self, payloads: Sequence[Any]) -> Tuple[List[PlannedItem], List[ItemFailure]]:
		planned: List[PlannedItem] = []
		failures: List[ItemFailure] = []
		seen_ids = set()
		for index, payload in enumerate(payloads):
			identity = item_identity(payload)
			try:
				request = LineItemChangeRequest.from_payload(payload, index)
				if request.item_id is not None:
					if request.item_id in seen_ids:
						raise ValidationError(f"itemId {request.item_id} appears more than once in the batch", "itemId")
					seen_ids.add(request.item_id)
				command = build_command(request, self.status_codes)
			except ItemRejected as exc:
				logger.warning("Item %d rejected (%s): %s %s", index, exc.kind, exc, identity)
				failures.append(ItemFailure(index, exc.kind, str(exc), identity))
				continue
			logger.debug("Item %d classified as %s %s", index, command.action.value, identity)
			planned.append(PlannedItem(index, request, command, identity))
		return planned, failures

	def reconcile(self, payloads: Optional[Sequence[Any]]) -> ReconciliationResult:
		if not isinstance(payloads, (list, tuple)) or not payloads:
			raise EmptyBatch("items must be a non-empty array")

		planned, failures = self.plan(payloads)
		if failures and self.policy is ReconcilePolicy.ATOMIC:
			raise BatchRejected(failures)

		result = ReconciliationResult(policy=self.policy, failures=failures)
		if not planned:
			logger.info("Nothing to apply: all %d item(s) were rejected", len(payloads))
			return result

		with self.provider.transaction() as cursor:
			for item in planned:
				try:
					self._apply(cursor, item, result)
				except self.provider.transaction_errors as exc:
					# deadlock or lost connection: the server already discarded the batch
					raise ItemStatementError(item.index, item.command.action, item.identity) from exc
				except self.provider.statement_errors as exc:
					if self.policy is ReconcilePolicy.ATOMIC:
						raise ItemStatementError(item.index, item.command.action, item.identity) from exc
					logger.error(
						"Item %d %s failed, continuing: %s %s",
						item.index,
						item.command.action.value,
						exc,
						item.identity,
					)
					result.failures.append(
						ItemFailure(item.index, "statement", f"{item.command.action.value} was rejected by the database", item.identity)
					)

		logger.info(
			"Reconciled %d item(s) [%s]: inserted=%d updated=%d deleted=%d warnings=%d failures=%d",
			len(payloads),
			self.policy.value,
			len(result.inserted),
			len(result.updated),
			len(result.deleted),
			len(result.warnings),
			len(result.failures),
		)
		return result

	def _apply(self, cursor: Any, item: PlannedItem, result: ReconciliationResult) -> None:
		command = item.command
		cursor.execute(command.sql, command.params())

		if command.action is Action.INSERT:
			new_id = cursor.lastrowid
			result.inserted.append({"index": item.index, "itemId": new_id, "clientRef": item.request.client_ref})
			logger.debug("Item %d inserted with itemId %s", item.index, new_id)
			return

		if cursor.rowcount == 0:
			logger.warning("Item %d %s affected no rows %s", item.index, command.action.value, command.key())
			result.warnings.append(
				{"index": item.index, "action": command.action.value, "reason": "not found", **command.key()}
			)
			return

		outcome = {"index": item.index, **command.key()}
		if command.action is Action.UPDATE:
			result.updated.append(outcome)
		else:
			result.deleted.append(outcome)
