#!/usr/bin/env python3
"""
Positions API

JSON endpoints behind the mini app's position tracker.
Runs on port 5000 by default (PORT env var).

Endpoints:
  GET    /api/positions                 — all positions, newest first
  POST   /api/positions                 — {"action": "open" | "close", ...}
  DELETE /api/positions/<id>            — remove a position
  POST   /api/positions/<id>/simulate   — what-if close, nothing written
  GET    /api/price?at=&manual=         — reference price sample
  GET    /api/summary                   — counts and realized P&L
  POST   /api/prediction                — stand-in for the prediction model
"""

import logging
import random

from flask import Flask, jsonify, request
from flask_cors import CORS

from positions import NotFound, OracleUnavailable, PersistenceError, ValidationError
from tracker_config import build_engine, load_config, setup_logging

log = logging.getLogger("positions.api")

MANUAL_ENTRY_MESSAGE = "CoinGecko API failed. Please enter price manually."

PREDICTION_OUTCOMES = [
    {"prediction": "positive", "tokenToBuy": "ETH"},
    {"prediction": "negative", "tokenToBuy": None},
]


def _error(message, status, **extra):
    return jsonify({"error": message, **extra}), status


def _body():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def create_app(engine=None, cfg=None):
    """Build the Flask app around one PositionEngine instance."""
    if engine is None:
        engine = build_engine(cfg)

    app = Flask(__name__)
    CORS(app)

    # ── error mapping ─────────────────────────────────────────────────────────

    @app.errorhandler(ValidationError)
    def handle_validation(e):
        return _error(str(e), 400)

    @app.errorhandler(NotFound)
    def handle_not_found(e):
        return _error(str(e), 404)

    @app.errorhandler(OracleUnavailable)
    def handle_oracle(e):
        return _error(MANUAL_ENTRY_MESSAGE, 503, manualEntry=True)

    @app.errorhandler(PersistenceError)
    def handle_persistence(e):
        return _error(str(e), 500)

    # ── positions ─────────────────────────────────────────────────────────────

    @app.route("/api/positions", methods=["GET"])
    def list_positions():
        try:
            return jsonify([p.to_dict() for p in engine.store.list_all()])
        except Exception as e:
            log.error(f"Failed to fetch positions: {e}", exc_info=True)
            return _error("Failed to fetch positions", 500)

    @app.route("/api/positions", methods=["POST"])
    def post_position():
        data = _body()
        action = data.get("action")

        if action == "open":
            position = engine.open(
                side=data.get("side"),
                price_usd=data.get("priceUsd"),
                amount=data.get("amount"),
                opened_at=data.get("openedAt"),
            )
            return jsonify(position.to_dict())

        if action == "close":
            position_id = data.get("id")
            close_price = data.get("closePriceUsd")
            closed_at = data.get("closedAt")
            if not position_id or not close_price or not closed_at:
                return _error("Missing required fields", 400)
            position = engine.close(position_id, closed_at, close_price)
            return jsonify(position.to_dict())

        return _error("Invalid action", 400)

    @app.route("/api/positions/<position_id>", methods=["DELETE"])
    def delete_position(position_id):
        if not engine.delete(position_id):
            return _error("Position not found", 404)
        return jsonify({"deleted": True, "id": position_id})

    @app.route("/api/positions/<position_id>/simulate", methods=["POST"])
    def simulate_position(position_id):
        data = request.get_json(silent=True) or {}
        if not isinstance(data, dict):
            raise ValidationError("Request body must be a JSON object")
        result = engine.simulate(
            position_id,
            at_instant=data.get("at"),
            hypothetical_price=data.get("price"),
        )
        return jsonify(result.to_dict())

    # ── prices & reporting ────────────────────────────────────────────────────

    @app.route("/api/price")
    def price():
        manual = request.args.get("manual")
        if manual:
            try:
                manual = float(manual)
            except ValueError:
                raise ValidationError("Please enter a valid price")
        else:
            manual = None
        sample = engine.fetch_price(request.args.get("at") or None, manual)
        return jsonify(sample.to_dict())

    @app.route("/api/summary")
    def summary():
        return jsonify(engine.summary())

    @app.route("/api/prediction", methods=["POST"])
    def prediction():
        return jsonify(random.choice(PREDICTION_OUTCOMES))

    @app.route("/api/health")
    def health():
        return jsonify({"status": "ok", "storageKey": engine.store.key})

    return app


if __name__ == "__main__":
    cfg = load_config()
    setup_logging(cfg["log_level"])
    log.info(f"Positions API starting: storage={cfg['storage_backend']} dir={cfg['data_dir']}")
    create_app(cfg=cfg).run(host="0.0.0.0", port=cfg["port"], debug=False)
