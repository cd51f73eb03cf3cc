import logging
import os

from dotenv import load_dotenv
from flask import Flask, jsonify, request
from sqlalchemy import inspect as sa_inspect

from app.pudo.config import load_config
from app.pudo.db import init_db, teardown_db_session
from app.pudo import models as _models  # noqa: F401  (registers all tables on Base.metadata)
from app.pudo.routes import bp as routes_bp
from app.pudo.modules.pickup.api import bp as pickup_api_bp
from app.pudo.modules.pickup.notifications import dispatcher_from_config

PICKUP_TABLES = (
    "operators",
    "pickup_locations",
    "pickup_couriers",
    "pickup_packages",
    "pickup_otps",
    "pickup_package_history",
    "pickup_customers",
    "pickup_customer_reports",
)


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")

    init_db(app)

    def _dispose_engine_on_fork() -> None:
        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    # Storage config check (fail loudly on misconfiguration)
    if app.config.get("STORAGE_BACKEND") == "s3":
        missing_s3 = [
            key
            for key in ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY")
            if not app.config.get(key)
        ]
        if missing_s3:
            app.logger.error("STORAGE CONFIG ERROR: Missing required S3 env vars: %s", ", ".join(missing_s3))

    app.extensions["pickup_dispatcher"] = dispatcher_from_config(app.config)

    app.register_blueprint(routes_bp)
    app.register_blueprint(pickup_api_bp, url_prefix="/api/pickup")

    app.teardown_appcontext(teardown_db_session)

    # Schema health (lean): warn when migrations have not been applied.
    app.config.setdefault("_schema_health_missing", [])
    try:
        insp = sa_inspect(app.extensions["sqlalchemy_engine"])
        missing = [t for t in PICKUP_TABLES if not insp.has_table(t)]
        if missing:
            app.config["_schema_health_missing"] = missing
            app.logger.warning("DB schema out of date; run `alembic upgrade head`. Missing: %s", ", ".join(missing))
    except Exception as e:
        app.logger.exception("Schema health check failed: %s", e)

    @app.errorhandler(404)
    def _err_404(e):  # type: ignore[no-redef]
        return jsonify({"error": "Not found."}), 404

    @app.errorhandler(405)
    def _err_405(e):  # type: ignore[no-redef]
        return jsonify({"error": "Method not allowed."}), 405

    @app.errorhandler(413)
    def _err_413(e):  # type: ignore[no-redef]
        return jsonify({"error": "Request body too large."}), 413

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        app.logger.exception("Unhandled 500 (%s %s)", request.method, request.path)
        return jsonify({"error": "Internal server error."}), 500

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
