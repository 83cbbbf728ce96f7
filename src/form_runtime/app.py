from __future__ import annotations

import logging
import math
import os
from typing import Any

from flask import Flask, jsonify, request
from werkzeug.exceptions import BadRequest, HTTPException

from .models import FieldDefinitionError, parse_fields
from .session import DEFAULT_MAX_PASSES, FormSession
from .validation import (
    ConditionValidationError,
    FormulaValidationError,
    validate_conditions,
    validate_form_definition,
    validate_formula,
)

APP_NAME = "form-runtime"


def _configure_observability(app: Flask, app_name: str) -> None:
    app.config["APP_NAME"] = app_name
    level_name = os.environ.get("APP_LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    app.logger.setLevel(level)


def _is_api_request() -> bool:
    return request.path.startswith("/api/")


def _configure_error_handlers(app: Flask) -> None:
    @app.errorhandler(BadRequest)
    def handle_bad_request(error: BadRequest) -> Any:
        app.logger.warning("bad_request", extra={"path": request.path, "method": request.method, "error": str(error)})
        if _is_api_request():
            return jsonify({"error": "invalid request payload"}), 400
        return error

    @app.errorhandler(FieldDefinitionError)
    def handle_invalid_definition(error: FieldDefinitionError) -> Any:
        app.logger.warning("invalid_field_definition", extra={"path": request.path, "error": str(error)})
        return jsonify({"error": str(error)}), 400

    @app.errorhandler(HTTPException)
    def handle_http_error(error: HTTPException) -> Any:
        app.logger.warning(
            "http_error",
            extra={"path": request.path, "method": request.method, "status_code": error.code, "error": error.description},
        )
        if _is_api_request():
            return jsonify({"error": error.description}), error.code
        return error

    @app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception) -> Any:
        app.logger.exception("unexpected_error", extra={"path": request.path, "method": request.method})
        if _is_api_request():
            return jsonify({"error": "internal server error"}), 500
        raise error


def _json_body() -> dict[str, Any]:
    payload = request.get_json(force=True, silent=False)
    if not isinstance(payload, dict):
        raise BadRequest("request body must be a JSON object")
    return payload


def _json_number(value: float) -> float | str:
    # JSON has no infinity; send it the way the form renders it.
    if math.isinf(value):
        return "Infinity" if value > 0 else "-Infinity"
    return value


def _json_value(value: Any) -> Any:
    if isinstance(value, float):
        return _json_number(value)
    return value


def _resolve_max_passes(max_passes: int | None) -> int:
    if max_passes is None:
        raw_value = os.environ.get("FORM_RUNTIME_MAX_PASSES", str(DEFAULT_MAX_PASSES))
        try:
            max_passes = int(raw_value)
        except ValueError as error:
            raise ValueError(f"FORM_RUNTIME_MAX_PASSES must be an integer, got {raw_value!r}") from error
    if max_passes < 1:
        raise ValueError("max passes must be at least 1")
    return max_passes


def create_form_runtime_app(max_passes: int | None = None) -> Flask:
    app = Flask(__name__)
    _configure_observability(app, APP_NAME)
    _configure_error_handlers(app)
    app.config["MAX_RECONCILE_PASSES"] = _resolve_max_passes(max_passes)

    @app.get("/healthz")
    def healthz() -> Any:
        return jsonify({"status": "ok", "app": app.config["APP_NAME"]})

    @app.post("/api/evaluate")
    def evaluate() -> Any:
        payload = _json_body()
        fields = parse_fields(payload.get("fields"))
        form_data = payload.get("form_data") or {}
        if not isinstance(form_data, dict):
            raise BadRequest("form_data must be an object")

        session = FormSession(fields, form_data)
        settled = session.settle(max_passes=app.config["MAX_RECONCILE_PASSES"])
        app.logger.info(
            "form_evaluated",
            extra={
                "field_count": len(fields),
                "calculated_count": len(settled.calculated_values),
                "passes": settled.passes,
                "converged": settled.converged,
            },
        )
        return jsonify(
            {
                "field_states": {field_id: state.to_dict() for field_id, state in settled.field_states.items()},
                "calculated_values": {
                    field_id: _json_number(value) for field_id, value in settled.calculated_values.items()
                },
                "form_data": {key: _json_value(value) for key, value in form_data.items()},
                "passes": settled.passes,
                "converged": settled.converged,
            }
        )

    @app.post("/api/conditions/validate")
    def validate_field_conditions() -> Any:
        payload = _json_body()
        fields = parse_fields(payload.get("fields"))
        try:
            validate_conditions(fields)
        except ConditionValidationError as error:
            return jsonify({"error": str(error)}), 400
        return jsonify({"message": "Conditions valid"})

    @app.post("/api/formulas/validate")
    def validate_field_formula() -> Any:
        payload = _json_body()
        formula = str(payload.get("formula") or "")
        if not formula.strip():
            raise BadRequest("formula is required")
        fields = parse_fields(payload.get("fields"))
        try:
            validate_formula(formula, fields)
        except FormulaValidationError as error:
            return jsonify({"error": str(error)}), 400
        return jsonify({"message": "Formula valid"})

    @app.post("/api/forms/validate")
    def validate_form() -> Any:
        payload = _json_body()
        fields = parse_fields(payload.get("fields"))
        errors = validate_form_definition(fields)
        if errors:
            app.logger.info("form_definition_invalid", extra={"error_count": len(errors)})
        return jsonify({"valid": not errors, "errors": errors})

    return app
