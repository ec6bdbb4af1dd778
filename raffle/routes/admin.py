from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from ..schemas import AccountUpdateRequest, ForceResetRequest, ForceResetResponse, FundAccountRequest
from ..services.ledger import normalise_address
from . import get_app_settings, raffle_scope

bp = Blueprint("admin", __name__)


def _require_admin() -> bool:
    api_key = get_app_settings().admin_api_key
    if api_key:
        provided = request.headers.get("X-Admin-Token")
        if provided != api_key:
            return False
    return True


@bp.before_request
def verify_admin():
    if not _require_admin():
        return jsonify({"error": "unauthorized"}), 401
    return None


@bp.get("/events")
def list_events():
    name = request.args.get("name")
    limit = request.args.get("limit", type=int)
    with raffle_scope() as raffle:
        events = [event.to_dict() for event in raffle.ledger.events(name=name, limit=limit)]
    return jsonify(events)


@bp.get("/accounts/<address>")
def get_account(address: str):
    try:
        address = normalise_address(address)
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400
    with raffle_scope() as raffle:
        return jsonify(raffle.ledger.get_account(address).to_dict())


@bp.post("/accounts/<address>/fund")
def fund_account(address: str):
    payload = request.get_json(force=True, silent=True) or {}
    data = FundAccountRequest(**payload)
    try:
        address = normalise_address(address)
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400

    with raffle_scope() as raffle:
        raffle.ledger.mint(address, data.amount)
        account = raffle.ledger.get_account(address).to_dict()
    current_app.logger.info("Funded %s with %s", address, data.amount)
    return jsonify(account)


@bp.patch("/accounts/<address>")
def update_account(address: str):
    payload = request.get_json(force=True, silent=True) or {}
    data = AccountUpdateRequest(**payload)
    try:
        address = normalise_address(address)
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400

    with raffle_scope() as raffle:
        account = raffle.ledger.set_accepts_transfers(address, data.accepts_transfers).to_dict()
    return jsonify(account)


@bp.post("/raffle/force-reset")
def force_reset():
    payload = request.get_json(force=True, silent=True) or {}
    data = ForceResetRequest(**payload)

    with raffle_scope() as raffle:
        cancelled = raffle.force_reset(data.operator)
        state = raffle.get_raffle_state().name

    current_app.logger.warning("Raffle force-reset by %s; cancelled request %s", data.operator, cancelled)
    return jsonify(ForceResetResponse(cancelled_request_id=cancelled, raffle_state=state).model_dump())
