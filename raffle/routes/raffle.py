from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from ..schemas import EnterRaffleRequest, EnterRaffleResponse, PerformUpkeepResponse, UpkeepResponse
from . import raffle_scope

bp = Blueprint("raffle", __name__)


@bp.get("")
def get_raffle():
    with raffle_scope() as raffle:
        return jsonify(raffle.snapshot())


@bp.get("/entrance-fee")
def get_entrance_fee():
    with raffle_scope() as raffle:
        return jsonify({"entrance_fee": str(raffle.get_entrance_fee())})


@bp.get("/players")
def list_players():
    with raffle_scope() as raffle:
        return jsonify(raffle.get_players())


@bp.get("/players/<int:index>")
def get_player(index: int):
    with raffle_scope() as raffle:
        try:
            player = raffle.get_player(index)
        except IndexError:
            return jsonify({"error": "player not found"}), 404
        return jsonify({"index": index, "player": player})


@bp.post("/enter")
def enter_raffle():
    payload = request.get_json(force=True, silent=True) or {}
    data = EnterRaffleRequest(**payload)

    with raffle_scope() as raffle:
        count = raffle.enter(data.player, data.value)

    response = EnterRaffleResponse(player=data.player, number_of_players=count)
    return jsonify(response.model_dump()), 201


@bp.get("/upkeep")
def check_upkeep():
    with raffle_scope() as raffle:
        upkeep_needed, perform_data = raffle.check_upkeep()
    response = UpkeepResponse(upkeep_needed=upkeep_needed, perform_data="0x" + perform_data.hex())
    return jsonify(response.model_dump())


@bp.post("/perform-upkeep")
def perform_upkeep():
    with raffle_scope() as raffle:
        request_id = raffle.perform_upkeep()
    current_app.logger.info("Upkeep performed; randomness request %s outstanding", request_id)
    return jsonify(PerformUpkeepResponse(request_id=request_id).model_dump())
