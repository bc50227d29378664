from __future__ import annotations

from flask import Blueprint, current_app, jsonify
from sqlalchemy.exc import OperationalError


bp = Blueprint("health", __name__, url_prefix="/health")


@bp.get("/database")
def database_status():
    from lojasocial import _ping_database

    try:
        _ping_database()
    except OperationalError as exc:
        root_cause = getattr(exc, "orig", exc)
        return (
            jsonify(
                {
                    "status": "DOWN",
                    "error": f"Unable to reach the database: {root_cause}",
                }
            ),
            503,
        )

    return jsonify(
        {
            "status": "UP",
            "startup_error": current_app.config.get("DATABASE_ERROR"),
        }
    )
