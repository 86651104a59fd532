"""Line-item change requests, their classification and the SQL they turn into.

A change request is one element of the ``items`` array posted by the
front-end. ``classify`` maps it to exactly one :class:`Action` using only
three inputs: whether ``itemId`` is present, the out-of-order flag and the
status code. ``build_command`` then turns it into one of the fixed statements
below. Every statement binds every one of its columns; an optional value the
client left out is bound as NULL, never dropped from the statement text.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, ClassVar, Dict, Mapping, Optional, Tuple, Union


LINE_ITEM_TABLE = "CAD_IPE"

# camelCase wire name -> legacy Base44 key (the table's column code)
FIELD_ALIASES: Dict[str, str] = {
	"itemId": "IPE_COD",
	"outOfOrderFlag": "FORA_DO_PEDIDO",
	"status": "IPE_STA",
	"orderRef": "REV_COD",
	"orderId": "PED_COD",
	"referenceCode": "CUP_REF",
	"description": "PRO_DES",
	"unitValue": "IPE_VTL",
	"unitCode": "UNI_COD",
	"productCode": "CUP_COD",
	"returnUser": "USU_DEV",
	"returnedAt": "IPE_DDV",
	"rescheduledNextPeriod": "REMARCADO_PROX_MES",
	"clientRef": "CUP_CDI",
}

IDENTITY_FIELDS = ("itemId", "orderRef", "orderId", "referenceCode", "clientRef")

INSERT_COLUMNS = (
	"REV_COD",
	"PED_COD",
	"CUP_REF",
	"PRO_DES",
	"IPE_VTL",
	"IPE_STA",
	"IPE_DFP",
	"IPE_DDV",
	"USU_DEV",
	"CUP_COD",
	"UNI_COD",
	"REMARCADO_PROX_MES",
)
UPDATE_COLUMNS = ("IPE_STA", "REMARCADO_PROX_MES", "IPE_DFP", "IPE_DDV", "USU_DEV")

INSERT_SQL = "INSERT INTO {table} ({columns}) VALUES ({placeholders})".format(
	table=LINE_ITEM_TABLE,
	columns=", ".join(INSERT_COLUMNS),
	placeholders=", ".join(["%s"] * len(INSERT_COLUMNS)),
)
UPDATE_SQL = "UPDATE {table} SET {assignments} WHERE IPE_COD=%s".format(
	table=LINE_ITEM_TABLE,
	assignments=", ".join(f"{col}=%s" for col in UPDATE_COLUMNS),
)
DELETE_BY_ID_SQL = f"DELETE FROM {LINE_ITEM_TABLE} WHERE IPE_COD=%s"
# Only out-of-order rows are eligible, one row per request.
DELETE_BY_REFERENCE_SQL = (
	f"DELETE FROM {LINE_ITEM_TABLE} "
	"WHERE REV_COD=%s AND PED_COD=%s AND CUP_REF=%s AND IPE_DFP=1 "
	"ORDER BY IPE_COD DESC LIMIT 1"
)


class ItemRejected(Exception):
	kind = "rejected"

	def __init__(self, message: str, field: Optional[str] = None) -> None:
		super().__init__(message)
		self.field = field


class ValidationError(ItemRejected):
	"""A request lacks a value its action needs, or a value does not parse."""

	kind = "validation"


class ClassificationMiss(ItemRejected):
	kind = "unclassified"


class Action(str, Enum):
	DELETE = "delete"
	INSERT = "insert"
	UPDATE = "update"
	REJECT = "reject"


@dataclass(frozen=True)
class StatusCodes:
	removed: int = 1
	returned_outside_order: int = 9


def _parse_int(value: Any, field: str) -> Optional[int]:
	if value is None or value == "":
		return None
	if isinstance(value, bool):
		raise ValidationError(f"{field} must be an integer", field)
	if isinstance(value, float) and not value.is_integer():
		raise ValidationError(f"{field} must be an integer", field)
	try:
		return int(value)
	except (TypeError, ValueError):
		raise ValidationError(f"{field} must be an integer", field)


def _parse_decimal(value: Any, field: str) -> Optional[Decimal]:
	if value is None or value == "":
		return None
	if isinstance(value, bool):
		raise ValidationError(f"{field} must be a number", field)
	try:
		parsed = Decimal(str(value).strip())
	except (InvalidOperation, ValueError):
		raise ValidationError(f"{field} must be a number", field)
	if not parsed.is_finite():
		raise ValidationError(f"{field} must be a number", field)
	return parsed


def _parse_bool(value: Any, field: str) -> bool:
	if value is None or value == "":
		return False
	if isinstance(value, bool):
		return value
	if isinstance(value, int) and value in (0, 1):
		return bool(value)
	if isinstance(value, str):
		lowered = value.strip().lower()
		if lowered in {"true", "1", "yes"}:
			return True
		if lowered in {"false", "0", "no"}:
			return False
	raise ValidationError(f"{field} must be a boolean", field)


def _parse_datetime(value: Any, field: str) -> Optional[dt.datetime]:
	if value is None or value == "":
		return None
	if not isinstance(value, str):
		raise ValidationError(f"{field} must be an ISO-8601 datetime string", field)
	text = value.strip()
	if text.endswith("Z"):
		text = text[:-1] + "+00:00"
	try:
		parsed = dt.datetime.fromisoformat(text)
	except ValueError:
		raise ValidationError(f"{field} must be an ISO-8601 datetime string", field)
	if parsed.tzinfo is not None:
		# DATETIME columns hold naive UTC
		parsed = parsed.astimezone(dt.timezone.utc).replace(tzinfo=None)
	return parsed


def _parse_text(value: Any) -> Optional[str]:
	if value is None:
		return None
	text = str(value).strip()
	return text or None


def normalize_keys(payload: Mapping[str, Any]) -> Dict[str, Any]:
	"""Map legacy column-coded keys onto wire names; wire names win."""
	legacy = {alias: name for name, alias in FIELD_ALIASES.items()}
	normalized: Dict[str, Any] = {}
	for key, value in payload.items():
		name = legacy.get(key)
		if name is not None and name in payload:
			continue
		normalized[name or key] = value
	return normalized


def item_identity(payload: Any) -> Dict[str, Any]:
	"""Identifying fields of a raw payload, for logs and failure reports."""
	if not isinstance(payload, Mapping):
		return {}
	fields = normalize_keys(payload)
	return {name: fields[name] for name in IDENTITY_FIELDS if fields.get(name) not in (None, "")}


@dataclass(frozen=True)
class LineItemChangeRequest:
	index: int
	item_id: Optional[int] = None
	out_of_order: bool = False
	status: Optional[int] = None
	order_ref: Optional[int] = None
	order_id: Optional[int] = None
	reference_code: Optional[str] = None
	description: Optional[str] = None
	unit_value: Optional[Decimal] = None
	unit_code: Optional[str] = None
	product_code: Optional[str] = None
	return_user: Optional[str] = None
	returned_at: Optional[dt.datetime] = None
	rescheduled: bool = False
	client_ref: Optional[str] = None

	@classmethod
	def from_payload(cls, payload: Any, index: int) -> "LineItemChangeRequest":
		if not isinstance(payload, Mapping):
			raise ValidationError("item must be a JSON object")
		fields = normalize_keys(payload)
		return cls(
			index=index,
			item_id=_parse_int(fields.get("itemId"), "itemId"),
			out_of_order=_parse_bool(fields.get("outOfOrderFlag"), "outOfOrderFlag"),
			status=_parse_int(fields.get("status"), "status"),
			order_ref=_parse_int(fields.get("orderRef"), "orderRef"),
			order_id=_parse_int(fields.get("orderId"), "orderId"),
			reference_code=_parse_text(fields.get("referenceCode")),
			description=_parse_text(fields.get("description")),
			unit_value=_parse_decimal(fields.get("unitValue"), "unitValue"),
			unit_code=_parse_text(fields.get("unitCode")),
			product_code=_parse_text(fields.get("productCode")),
			return_user=_parse_text(fields.get("returnUser")),
			returned_at=_parse_datetime(fields.get("returnedAt"), "returnedAt"),
			rescheduled=_parse_bool(fields.get("rescheduledNextPeriod"), "rescheduledNextPeriod"),
			client_ref=_parse_text(fields.get("clientRef")),
		)


def classify(has_item_id: bool, out_of_order: bool, status: Optional[int], codes: StatusCodes = StatusCodes()) -> Action:
	if out_of_order and status == codes.removed:
		return Action.DELETE
	if out_of_order and status == codes.returned_outside_order:
		return Action.INSERT
	if has_item_id:
		return Action.UPDATE
	return Action.REJECT


def classify_request(request: LineItemChangeRequest, codes: StatusCodes = StatusCodes()) -> Action:
	return classify(request.item_id is not None, request.out_of_order, request.status, codes)


@dataclass(frozen=True)
class InsertLineItem:
	action: ClassVar[Action] = Action.INSERT
	sql: ClassVar[str] = INSERT_SQL

	order_ref: int
	order_id: int
	reference_code: str
	unit_value: Decimal
	status: int
	description: Optional[str] = None
	returned_at: Optional[dt.datetime] = None
	return_user: Optional[str] = None
	product_code: Optional[str] = None
	unit_code: Optional[str] = None
	rescheduled: bool = False

	def values(self) -> Dict[str, Any]:
		return {
			"REV_COD": self.order_ref,
			"PED_COD": self.order_id,
			"CUP_REF": self.reference_code,
			"PRO_DES": self.description,
			"IPE_VTL": self.unit_value,
			"IPE_STA": self.status,
			"IPE_DFP": 1,
			"IPE_DDV": self.returned_at,
			"USU_DEV": self.return_user,
			"CUP_COD": self.product_code,
			"UNI_COD": self.unit_code,
			"REMARCADO_PROX_MES": int(self.rescheduled),
		}

	def params(self) -> Tuple[Any, ...]:
		values = self.values()
		return tuple(values[col] for col in INSERT_COLUMNS)

	def key(self) -> Dict[str, Any]:
		return {"orderRef": self.order_ref, "orderId": self.order_id, "referenceCode": self.reference_code}


@dataclass(frozen=True)
class UpdateLineItem:
	action: ClassVar[Action] = Action.UPDATE
	sql: ClassVar[str] = UPDATE_SQL

	item_id: int
	status: int
	out_of_order: bool = False
	rescheduled: bool = False
	returned_at: Optional[dt.datetime] = None
	return_user: Optional[str] = None

	def values(self) -> Dict[str, Any]:
		return {
			"IPE_STA": self.status,
			"REMARCADO_PROX_MES": int(self.rescheduled),
			"IPE_DFP": int(self.out_of_order),
			"IPE_DDV": self.returned_at,
			"USU_DEV": self.return_user,
		}

	def params(self) -> Tuple[Any, ...]:
		values = self.values()
		return tuple(values[col] for col in UPDATE_COLUMNS) + (self.item_id,)

	def key(self) -> Dict[str, Any]:
		return {"itemId": self.item_id}


@dataclass(frozen=True)
class DeleteLineItem:
	action: ClassVar[Action] = Action.DELETE
	sql: ClassVar[str] = DELETE_BY_ID_SQL

	item_id: int

	def params(self) -> Tuple[Any, ...]:
		return (self.item_id,)

	def key(self) -> Dict[str, Any]:
		return {"itemId": self.item_id}


@dataclass(frozen=True)
class DeleteLineItemByReference:
	action: ClassVar[Action] = Action.DELETE
	sql: ClassVar[str] = DELETE_BY_REFERENCE_SQL

	order_ref: int
	order_id: int
	reference_code: str

	def params(self) -> Tuple[Any, ...]:
		return (self.order_ref, self.order_id, self.reference_code)

	def key(self) -> Dict[str, Any]:
		return {"orderRef": self.order_ref, "orderId": self.order_id, "referenceCode": self.reference_code}


LineItemCommand = Union[InsertLineItem, UpdateLineItem, DeleteLineItem, DeleteLineItemByReference]

_WIRE_NAMES = {
	"order_ref": "orderRef",
	"order_id": "orderId",
	"reference_code": "referenceCode",
	"unit_value": "unitValue",
}


def _require(request: LineItemChangeRequest, attrs: Tuple[str, ...], action: str) -> None:
	missing = [_WIRE_NAMES[attr] for attr in attrs if getattr(request, attr) is None]
	if missing:
		raise ValidationError(f"{action} requires {', '.join(missing)}", missing[0])


def build_command(request: LineItemChangeRequest, codes: StatusCodes = StatusCodes()) -> LineItemCommand:
	action = classify_request(request, codes)

	if action is Action.DELETE:
		if request.item_id is not None:
			return DeleteLineItem(item_id=request.item_id)
		_require(request, ("order_ref", "order_id", "reference_code"), "delete without itemId")
		return DeleteLineItemByReference(
			order_ref=request.order_ref,
			order_id=request.order_id,
			reference_code=request.reference_code,
		)

	if action is Action.INSERT:
		_require(request, ("order_ref", "order_id", "reference_code", "unit_value"), "insert")
		return InsertLineItem(
			order_ref=request.order_ref,
			order_id=request.order_id,
			reference_code=request.reference_code,
			unit_value=request.unit_value,
			status=request.status,
			description=request.description,
			returned_at=request.returned_at,
			return_user=request.return_user,
			product_code=request.product_code,
			unit_code=request.unit_code,
			rescheduled=request.rescheduled,
		)

	if action is Action.UPDATE:
		if request.status is None:
			raise ValidationError("update requires status", "status")
		return UpdateLineItem(
			item_id=request.item_id,
			status=request.status,
			out_of_order=request.out_of_order,
			rescheduled=request.rescheduled,
			returned_at=request.returned_at,
			return_user=request.return_user,
		)

	raise ClassificationMiss("item has no itemId and is not an out-of-order return or removal")
