# marketplace/main.py
import logging
import time

from flask import Flask, abort, g, jsonify, request, session

from marketplace.auth import Principal
from marketplace.blueprints.admin import admin_bp
from marketplace.blueprints.orders import orders_bp
from marketplace.blueprints.seller import seller_bp
from marketplace.blueprints.stores import stores_bp
from marketplace.config import Config
from marketplace.database import Base, close_db, engine
from marketplace.errors import MarketplaceError
from marketplace.observability import (
    check_database_health,
    configure_logging,
    ensure_request_id,
    get_metrics_snapshot,
    increment_counter,
    observe_latency,
)
from marketplace.storage import build_blob_storage

import marketplace.models  # noqa: F401  registers the tables on Base.metadata

app = Flask(__name__)
Config.configure_app(app)
configure_logging(app)
app.extensions["blob_storage"] = build_blob_storage(Config)

app.register_blueprint(stores_bp)
app.register_blueprint(admin_bp)
app.register_blueprint(seller_bp)
app.register_blueprint(orders_bp)

logger = logging.getLogger(__name__)


def init_database():
    """Create any missing tables."""
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables initialized")


init_database()


@app.before_request
def before_request_metrics():
    g.request_started_at = time.perf_counter()
    g.request_id = ensure_request_id()
    increment_counter(
        "http_requests_total",
        labels={
            "method": request.method,
            "endpoint": request.endpoint or request.path,
        },
    )


@app.after_request
def after_request_metrics(response):
    started = getattr(g, "request_started_at", None)
    if started is not None:
        duration_ms = (time.perf_counter() - started) * 1000
        observe_latency(
            "http_request_latency_ms",
            duration_ms,
            labels={
                "method": request.method,
                "endpoint": request.endpoint or request.path,
                "status": str(response.status_code),
            },
        )
    response.headers[Config.REQUEST_ID_HEADER] = getattr(g, "request_id", "")
    if response.status_code >= 500:
        increment_counter(
            "http_errors_total",
            labels={
                "method": request.method,
                "endpoint": request.endpoint or request.path,
                "status": str(response.status_code),
            },
        )
        logger.error("Request finished with error status %s", response.status_code)
    else:
        logger.info("Request finished", extra={"status_code": response.status_code})
    return response


@app.teardown_appcontext
def teardown_db(exception):
    close_db(exception)


@app.errorhandler(MarketplaceError)
def handle_marketplace_error(exc: MarketplaceError):
    increment_counter("domain_errors_total", labels={"code": exc.code})
    if exc.http_status >= 500:
        logger.error("Request failed: %s", exc.message, extra={"error_code": exc.code})
    else:
        logger.warning("Request rejected: %s", exc.message, extra={"error_code": exc.code})
    return jsonify(exc.to_dict()), exc.http_status


@app.route("/health", methods=["GET"])
def health():
    db_status = check_database_health()
    overall = "UP" if db_status.get("status") == "UP" else "DEGRADED"
    status_code = 200 if overall == "UP" else 503
    return jsonify({
        "status": overall,
        "components": {
            "database": db_status
        }
    }), status_code


@app.route("/admin/metrics", methods=["GET"])
def admin_metrics():
    actor = Principal.from_session(session, Config.ADMIN_USER_IDS)
    if actor is None or not actor.is_admin:
        abort(403)
    return jsonify(get_metrics_snapshot())
