from __future__ import annotations

import json
from typing import Optional

from flask import Flask, jsonify
from pydantic import ValidationError
from werkzeug.exceptions import HTTPException

from . import db
from .config import AppSettings, load_settings
from .errors import RaffleError
from .models import Base
from .routes.admin import bp as admin_bp
from .routes.health import bp as health_bp
from .routes.provider import bp as provider_bp
from .routes.raffle import bp as raffle_bp
from .services.deployment import deploy
from .services.raffle import Clock, system_clock


def create_app(settings: Optional[AppSettings] = None, clock: Optional[Clock] = None) -> Flask:
    settings = settings or load_settings()
    clock = clock or system_clock

    app = Flask(__name__)
    app.config["SECRET_KEY"] = settings.flask.secret_key
    app.config["APP_SETTINGS"] = settings
    app.config["RAFFLE_CLOCK"] = clock

    Base.metadata.create_all(db.engine)
    with db.session_scope() as session:
        deploy(session, settings.raffle, clock=clock)

    app.register_blueprint(health_bp)
    app.register_blueprint(raffle_bp, url_prefix="/raffle")
    app.register_blueprint(provider_bp, url_prefix="/provider")
    app.register_blueprint(admin_bp, url_prefix="/admin/api")

    @app.errorhandler(ValidationError)
    def handle_validation_error(exc: ValidationError):
        return jsonify({"error": "invalid_request", "details": json.loads(exc.json())}), 400

    @app.errorhandler(RaffleError)
    def handle_raffle_error(exc: RaffleError):
        app.logger.info("Raffle operation rejected: %s", exc)
        return jsonify(exc.to_dict()), exc.status_code

    @app.errorhandler(Exception)
    def handle_error(exc: Exception):
        if isinstance(exc, HTTPException):
            return exc
        app.logger.exception("Unhandled error: %s", exc)
        return jsonify({"error": str(exc)}), 500

    return app
