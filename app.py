from __future__ import annotations

import atexit
import datetime as dt
import logging
import os
import uuid
from decimal import Decimal
from functools import wraps
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

import dicttoxml
import jwt
from flask import Flask, Response, current_app, jsonify, make_response, request
from flask_cors import CORS
from MySQLdb.constants import CLIENT
from werkzeug.exceptions import BadRequest, HTTPException, NotFound

from config import Config
from db import EXTENSION_KEY, DatabaseUnavailable, MySQLConnectionProvider, call_procedure, fetchall_dict, fetchone_dict
from line_items import StatusCodes
from reconcile import BatchRejected, EmptyBatch, ItemStatementError, LineItemReconciler, ReconcilePolicy


logger = logging.getLogger(__name__)

PROMOTER_LOGIN_SQL = """
	SELECT CLI_COD, GRU_COD, CLI_RAZ, CLI_DOC
	FROM CAD_CLI
	WHERE CLI_DOC = %s
	  AND CLI_DOC = %s
	  AND GRU_COD IN (2, 4)
	  AND CLI_STA = 2
"""

DISCOUNT_RULES_SQL = """
	SELECT cad_dpd.PED_COD,
	       cad_tdp.TDP_DES,
	       cad_dpd.GRU_COD,
	       cad_dpd.DE,
	       cad_dpd.ATE,
	       cad_dpd.PORC,
	       cad_dpd.PORC_BONUS,
	       cad_dpd.PORC_CARENCIA,
	       cad_dpd.PORC_PERDA,
	       cad_dpd.QTDE_ACERTO_CARENCIA,
	       cad_dpd.DESC_VENDA_TOTAL
	FROM cad_dpd
	JOIN cad_tdp ON cad_dpd.TDP_COD = cad_tdp.TDP_COD
	WHERE cad_dpd.PED_COD = %s
"""

GENERAL_PRODUCTS_PROCEDURE = "sp_returnCupDigitacao"
SETTLEMENTS_PROCEDURE = "sp_CobrancaAcerto"

# Paths the Base44 front-end was built against.
LEGACY_ROUTES = {
	"/api/atualizar-status-itens-ipe": "reconcile_items",
	"/api/consultar-itens-pedido": "lookup_items",
	"/api/login-promotor": "promoter_login",
	"/api/consultar-produtos-gerais": "general_products",
	"/api/listar-acertos-promotor": "promoter_settlements",
	"/api/consultar-regras-desconto": "discount_rules",
}


def configure_logging(level: Any = "INFO") -> None:
	if isinstance(level, str):
		level = getattr(logging, level.strip().upper(), logging.INFO)
	logging.basicConfig(
		level=level,
		format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
	)
	# dicttoxml logs every element it renders at INFO
	logging.getLogger("dicttoxml").setLevel(logging.WARNING)


def _parse_int(value: Any, field: str, *, minimum: Optional[int] = None) -> int:
	if isinstance(value, bool):
		raise BadRequest(f"{field} must be an integer")
	try:
		parsed = int(value)
	except (TypeError, ValueError):
		raise BadRequest(f"{field} must be an integer")
	if minimum is not None and parsed < minimum:
		raise BadRequest(f"{field} must be >= {minimum}")
	return parsed


def _optional_int(body: Mapping[str, Any], *names: str) -> Optional[int]:
	for name in names:
		value = body.get(name)
		if value is not None and value != "":
			return _parse_int(value, name)
	return None


def _json_body() -> Dict[str, Any]:
	body = request.get_json(silent=True)
	if body is None:
		return {}
	if not isinstance(body, dict):
		raise BadRequest("Request body must be a JSON object")
	return body


def _get_format() -> str:
	fmt = (request.args.get("format") or "json").strip().lower()
	if fmt not in {"json", "xml"}:
		raise BadRequest("format must be 'json' or 'xml'")
	return fmt


def _to_xml(payload: Any, root: str = "response") -> bytes:
	return dicttoxml.dicttoxml(payload, custom_root=root, attr_type=False)


def api_response(payload: Any, status: int = 200, *, root: str = "response") -> Response:
	try:
		fmt = _get_format()
	except BadRequest:
		fmt = "json"
	if fmt == "xml":
		resp = make_response(_to_xml(payload, root=root), status)
		resp.headers["Content-Type"] = "application/xml; charset=utf-8"
		return resp
	return make_response(jsonify(payload), status)


def error_response(message: str, status: int, *, details: Optional[Dict[str, Any]] = None, **extra: Any) -> Response:
	payload: Dict[str, Any] = {"success": False, "error": message}
	if details:
		payload["details"] = details
	payload.update(extra)
	return api_response(payload, status=status, root="error")


def _correlation_id() -> str:
	return uuid.uuid4().hex[:12]


def _normalize_value(value: Any) -> Any:
	if isinstance(value, (dt.date, dt.datetime)):
		return value.isoformat()
	if isinstance(value, Decimal):
		return float(value)
	if isinstance(value, (bytes, bytearray)):
		# BIT(n) columns come back as bytes
		return int.from_bytes(value, "big")
	return value


def _normalize_rows(rows: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
	return [{key: _normalize_value(value) for key, value in row.items()} for row in rows]


def _mask_document(document: str) -> str:
	return document[:3] + "*" * max(len(document) - 3, 0)


def _generate_token(subject: str, secret: str, *, expires_minutes: int = 60, claims: Optional[Dict[str, Any]] = None) -> str:
	now = dt.datetime.now(dt.timezone.utc)
	payload = {
		"sub": subject,
		"iat": int(now.timestamp()),
		"exp": int((now + dt.timedelta(minutes=expires_minutes)).timestamp()),
	}
	if claims:
		payload.update(claims)
	return jwt.encode(payload, secret, algorithm="HS256")


def require_jwt(fn: Callable[..., Response]) -> Callable[..., Response]:
	@wraps(fn)
	def wrapper(*args: Any, **kwargs: Any) -> Response:
		if not current_app.config.get("REQUIRE_AUTH"):
			return fn(*args, **kwargs)
		header = request.headers.get("Authorization", "")
		if not header.startswith("Bearer "):
			return error_response("Missing or invalid Authorization header", 401)
		token = header.split(" ", 1)[1].strip()
		try:
			jwt.decode(token, current_app.config["JWT_SECRET_KEY"], algorithms=["HS256"])
		except jwt.ExpiredSignatureError:
			return error_response("Token expired", 401)
		except jwt.InvalidTokenError:
			return error_response("Invalid token", 401)
		return fn(*args, **kwargs)

	return wrapper


def _handle_db_error(exc: Exception, where: str) -> Response:
	msg = str(exc)
	correlation_id = _correlation_id()
	logger.error("[%s] database error (correlation %s): %s", where, correlation_id, msg)
	return error_response("Database error", 500, correlationId=correlation_id)


def _truthy(value: Optional[str]) -> bool:
	return value is not None and value.strip().lower() in {"1", "true", "yes", "on"}


def _mysql_options(config: Mapping[str, Any]) -> Dict[str, Any]:
	# rowcount counts matched rows, so a no-op update is not reported as missing
	options: Dict[str, Any] = {"client_flag": CLIENT.FOUND_ROWS}
	if config.get("MYSQL_SSL_MODE"):
		options["ssl_mode"] = config["MYSQL_SSL_MODE"]
	if config.get("MYSQL_SSL_CA"):
		options["ssl"] = {"ca": config["MYSQL_SSL_CA"]}
	return options


def create_app(config_overrides: Optional[Dict[str, Any]] = None, *, provider: Any = None) -> Flask:
	app = Flask(__name__)
	app.config.from_object(Config)

	# Ensure env vars always take precedence (Config class attributes are evaluated at import time).
	def _env(name: str, default: Any) -> Any:
		value = os.getenv(name)
		if value is None:
			return default
		return value

	for key in ("MYSQL_USER", "MYSQL_PASSWORD", "MYSQL_HOST", "MYSQL_DB", "MYSQL_SSL_MODE", "MYSQL_SSL_CA"):
		app.config[key] = _env(key, app.config.get(key))
	for key in ("MYSQL_PORT", "MYSQL_CONNECT_TIMEOUT", "MYSQL_POOL_SIZE", "PORT", "JWT_EXPIRES_MINUTES"):
		app.config[key] = int(_env(key, app.config.get(key)))
	for key in ("CORS_ORIGINS", "JWT_SECRET_KEY", "RECONCILE_POLICY", "ITEMS_LOOKUP_PROCEDURE", "LOG_LEVEL"):
		app.config[key] = _env(key, app.config.get(key))
	app.config["STATUS_REMOVED"] = int(_env("STATUS_REMOVED", app.config["STATUS_REMOVED"]))
	app.config["STATUS_RETURNED_OUTSIDE_ORDER"] = int(
		_env("STATUS_RETURNED_OUTSIDE_ORDER", app.config["STATUS_RETURNED_OUTSIDE_ORDER"])
	)
	require_auth = os.getenv("REQUIRE_AUTH")
	if require_auth is not None:
		app.config["REQUIRE_AUTH"] = _truthy(require_auth)

	if config_overrides:
		app.config.update(config_overrides)

	# flask-mysqldb expects these keys
	app.config.setdefault("MYSQL_CURSORCLASS", "DictCursor")
	app.config["MYSQL_CUSTOM_OPTIONS"] = _mysql_options(app.config)

	configure_logging(app.config["LOG_LEVEL"])

	origins = app.config["CORS_ORIGINS"]
	CORS(app, origins=origins if origins == "*" else [o.strip() for o in origins.split(",") if o.strip()])

	if provider is None:
		provider = MySQLConnectionProvider(app)
		atexit.register(provider.close)
	else:
		app.extensions[EXTENSION_KEY] = provider

	reconciler = LineItemReconciler(
		provider,
		policy=ReconcilePolicy.parse(app.config["RECONCILE_POLICY"]),
		status_codes=StatusCodes(
			removed=app.config["STATUS_REMOVED"],
			returned_outside_order=app.config["STATUS_RETURNED_OUTSIDE_ORDER"],
		),
	)
	app.extensions["line_item_reconciler"] = reconciler

	@app.before_request
	def _validate_format() -> None:
		_get_format()

	@app.get("/")
	def index() -> Response:
		return Response("Promoter sync API is running", mimetype="text/plain")

	@app.get("/health")
	def health() -> Response:
		payload: Dict[str, Any] = {"success": True, "status": "ok"}
		if _truthy(request.args.get("deep")):
			provider.ping()
			payload["database"] = "ok"
		return api_response(payload)

	# -------------------------
	# Line item reconciliation
	# -------------------------
	@app.post("/reconcile-items")
	@require_jwt
	def reconcile_items() -> Response:
		body = _json_body()
		items = body.get("items", body.get("itens"))
		logger.info(
			"Reconciliation request with %s item(s)",
			len(items) if isinstance(items, list) else "no",
		)
		result = reconciler.reconcile(items)
		return api_response(result.to_dict())

	# -------------------------
	# Read-only lookups
	# -------------------------
	@app.post("/items/lookup")
	@require_jwt
	def lookup_items() -> Response:
		body = _json_body()
		order_ref = _optional_int(body, "orderRef", "REV_COD")
		order_id = _optional_int(body, "orderId", "PED_COD")
		if order_ref is None and order_id is None:
			return error_response("orderRef or orderId is required", 400)
		procedure = app.config["ITEMS_LOOKUP_PROCEDURE"]
		try:
			with provider.cursor() as cur:
				rows = call_procedure(cur, procedure, (order_ref, order_id))
		except provider.statement_errors as e:
			return _handle_db_error(e, "lookup_items")
		logger.info("[lookup_items] %s returned %d row(s)", procedure, len(rows))
		return api_response({"success": True, "data": _normalize_rows(rows), "total": len(rows)})

	@app.post("/promoters/login")
	def promoter_login() -> Response:
		body = _json_body()
		cpf = str(body.get("cpf") or "").strip()
		senha = str(body.get("senha") or "").strip()
		if not cpf or not senha:
			return error_response("cpf and senha are required", 400)
		try:
			with provider.cursor() as cur:
				cur.execute(PROMOTER_LOGIN_SQL, (cpf, senha))
				row = fetchone_dict(cur)
		except provider.statement_errors as e:
			return _handle_db_error(e, "promoter_login")
		if not row:
			logger.info("[promoter_login] rejected login for document %s", _mask_document(cpf))
			return error_response("Invalid credentials or promoter not authorized", 401)

		logger.info("[promoter_login] promoter %s logged in", row["CLI_COD"])
		expires_minutes = app.config["JWT_EXPIRES_MINUTES"]
		token = _generate_token(
			str(row["CLI_COD"]),
			app.config["JWT_SECRET_KEY"],
			expires_minutes=expires_minutes,
			claims={"grp": row["GRU_COD"]},
		)
		promoter = {key: _normalize_value(row.get(key)) for key in ("CLI_COD", "GRU_COD", "CLI_RAZ", "CLI_DOC")}
		return api_response(
			{
				"success": True,
				"promoter": promoter,
				"access_token": token,
				"token_type": "Bearer",
				"expires_in": expires_minutes * 60,
			}
		)

	@app.post("/products/general")
	@require_jwt
	def general_products() -> Response:
		try:
			with provider.cursor() as cur:
				rows = call_procedure(cur, GENERAL_PRODUCTS_PROCEDURE, (1,))
		except provider.statement_errors as e:
			return _handle_db_error(e, "general_products")
		logger.info("[general_products] %d product(s)", len(rows))
		return api_response({"success": True, "data": _normalize_rows(rows), "total": len(rows)})

	@app.post("/promoters/settlements")
	@require_jwt
	def promoter_settlements() -> Response:
		body = _json_body()
		if body.get("CLI_COD") is None:
			return error_response("CLI_COD is required", 400)
		cli_cod = _parse_int(body.get("CLI_COD"), "CLI_COD", minimum=0)
		# EMP_COD, ATRASADO, RevCod, TIPO, EndCompleto, CliCod
		args = (0, 0, 0, 4, 0, cli_cod)
		try:
			with provider.cursor() as cur:
				rows = call_procedure(cur, SETTLEMENTS_PROCEDURE, args)
		except provider.statement_errors as e:
			return _handle_db_error(e, "promoter_settlements")
		logger.info("[promoter_settlements] %d settlement(s) for CLI_COD %s", len(rows), cli_cod)
		return api_response({"success": True, "data": _normalize_rows(rows), "total": len(rows)})

	@app.post("/discount-rules")
	@require_jwt
	def discount_rules() -> Response:
		body = _json_body()
		if not body.get("PED_COD"):
			return error_response("PED_COD is required", 400)
		ped_cod = _parse_int(body.get("PED_COD"), "PED_COD", minimum=1)
		try:
			with provider.cursor() as cur:
				cur.execute(DISCOUNT_RULES_SQL, (ped_cod,))
				rows = fetchall_dict(cur)
		except provider.statement_errors as e:
			return _handle_db_error(e, "discount_rules")
		logger.info("[discount_rules] %d rule(s) for PED_COD %s", len(rows), ped_cod)
		return api_response({"success": True, "data": _normalize_rows(rows), "total": len(rows)})

	for path, endpoint in LEGACY_ROUTES.items():
		app.add_url_rule(path, endpoint=endpoint, methods=["POST"])

	# -------------------------
	# Consistent JSON/XML errors
	# -------------------------
	@app.errorhandler(EmptyBatch)
	def _empty_batch(err: EmptyBatch):
		return error_response(str(err), 400)

	@app.errorhandler(BatchRejected)
	def _batch_rejected(err: BatchRejected):
		return error_response(str(err), 400, failures=[f.to_dict() for f in err.failures])

	@app.errorhandler(ItemStatementError)
	def _item_statement_error(err: ItemStatementError):
		correlation_id = _correlation_id()
		logger.error(
			"Reconciliation rolled back at item %d (%s, correlation %s): %s %s",
			err.index,
			err.action.value,
			correlation_id,
			err.__cause__,
			err.item,
		)
		details = {"index": err.index, "action": err.action.value, "item": err.item}
		return error_response(
			"Reconciliation failed; no changes were applied",
			500,
			details=details,
			correlationId=correlation_id,
		)

	@app.errorhandler(DatabaseUnavailable)
	def _database_unavailable(err: DatabaseUnavailable):
		return error_response("Database unavailable", 500)

	@app.errorhandler(BadRequest)
	def _bad_request(err: BadRequest):
		return error_response(str(err.description or "Bad request"), 400)

	@app.errorhandler(NotFound)
	def _not_found(err: NotFound):
		return error_response("Not found", 404)

	@app.errorhandler(HTTPException)
	def _http_error(err: HTTPException):
		return error_response(str(err.description or err.name), err.code or 500)

	@app.errorhandler(Exception)
	def _unhandled(err: Exception):
		correlation_id = _correlation_id()
		logger.exception("Unhandled error (correlation %s)", correlation_id)
		return error_response("Internal server error", 500, correlationId=correlation_id)

	return app


app = create_app()


if __name__ == "__main__":
	app.run(host="0.0.0.0", port=app.config["PORT"])
