from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from ..schemas import FulfillRequest, FulfillResponse
from . import get_app_settings, raffle_scope

bp = Blueprint("provider", __name__)


def _require_provider() -> bool:
    token = get_app_settings().provider_token
    if not token:
        # No token configured: refuse every caller.
        return False
    return request.headers.get("X-Provider-Token") == token


@bp.before_request
def verify_provider():
    if not _require_provider():
        return jsonify({"error": "unauthorized"}), 401
    return None


@bp.get("/requests")
def list_pending_requests():
    with raffle_scope() as raffle:
        pending = [item.to_dict() for item in raffle.coordinator.pending_requests()]
    return jsonify(pending)


@bp.get("/requests/<int:request_id>")
def get_request(request_id: int):
    with raffle_scope() as raffle:
        record = raffle.coordinator.get_request(request_id)
        if record is None:
            return jsonify({"error": "request not found"}), 404
        return jsonify(record.to_dict())


@bp.post("/requests/<int:request_id>/fulfill")
def fulfill_request(request_id: int):
    payload = request.get_json(force=True, silent=True) or {}
    data = FulfillRequest(**payload)

    with raffle_scope() as raffle:
        success = raffle.coordinator.fulfill_random_words(request_id, raffle, words=data.random_words)
        response = FulfillResponse(
            request_id=request_id,
            success=success,
            error_code=raffle.coordinator.get_request(request_id).error_code,
            raffle_state=raffle.get_raffle_state().name,
            recent_winner=raffle.get_recent_winner(),
        )

    if not success:
        current_app.logger.warning(
            "Request %s consumed but the raffle rejected it: %s", request_id, response.error_code
        )
    return jsonify(response.model_dump())
