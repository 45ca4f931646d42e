import atexit
import logging
import time

from flask import Flask, g, jsonify, request
from flask_cors import CORS

from session_replay.auth import TokenAuthenticator
from session_replay.config import ServerConfig
from session_replay.errors import IngestError
from session_replay.gate import IngestGate
from session_replay.ledger import SessionLedger
from session_replay.metrics import IngestMetrics
from session_replay.rate_limiter import RateLimiter
from session_replay.reaper import ReaperJob
from session_replay.storage import EventStore
from session_replay.validator import BatchValidator

logger = logging.getLogger(__name__)

MAX_CONTENT_LENGTH = 5 * 1024 * 1024
MAX_EVENTS_PAGE = 1000


def create_app(config: ServerConfig, store: EventStore | None = None, time_func=None,
               start_reaper: bool = False):
    """Flask application factory."""
    app = Flask(__name__)
    app.config["MAX_CONTENT_LENGTH"] = MAX_CONTENT_LENGTH
    app.config["TESTING"] = config.is_test

    # Initialize components
    time_func = time_func or time.time
    if store is None:
        store = EventStore(config.database_path)
    metrics = IngestMetrics()
    authenticator = TokenAuthenticator(config.jwt_secret, config.jwt_expiration_hours)
    rate_limiter = RateLimiter(
        enabled=True,
        max_requests=config.rate_limit_max_requests,
        window_seconds=config.rate_limit_window_minutes * 60,
    )
    validator = BatchValidator(max_batch_events=config.max_batch_events, time_func=time_func)
    ledger = SessionLedger(
        store,
        retention_days=config.session_retention_days,
        max_events_per_session=config.max_events_per_session,
        time_func=time_func,
    )
    gate = IngestGate(authenticator, rate_limiter, validator, ledger, metrics)
    reaper = ReaperJob(
        ledger,
        interval_minutes=config.reaper_interval_minutes,
        metrics=metrics,
        rate_limiter=rate_limiter,
    )

    # Store components on app for access in tests and entry points
    app.config["components"] = {
        "config": config,
        "store": store,
        "metrics": metrics,
        "authenticator": authenticator,
        "rate_limiter": rate_limiter,
        "validator": validator,
        "ledger": ledger,
        "gate": gate,
        "reaper": reaper,
    }

    CORS(app, resources={r"/api/*": {"origins": list(config.cors_origins)}})

    if start_reaper:
        reaper.start()
        atexit.register(reaper.stop)

    # --- Request logging ---

    if config.enable_request_logging:
        @app.before_request
        def _start_timer():
            g.request_started = time.monotonic()

        @app.after_request
        def _log_request(response):
            started = g.get("request_started")
            elapsed_ms = (time.monotonic() - started) * 1000 if started else 0.0
            logger.info(
                "%s %s -> %d (%.1fms)",
                request.method, request.path, response.status_code, elapsed_ms,
            )
            return response

    @app.after_request
    def _rate_limit_headers(response):
        decision = g.get("rate_decision")
        if decision is not None:
            response.headers["X-RateLimit-Limit"] = str(decision.limit)
            response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
        return response

    # --- Errors ---

    @app.errorhandler(IngestError)
    def _ingest_error(exc):
        response = jsonify(exc.to_dict())
        response.status_code = exc.status_code
        retry_after = getattr(exc, "retry_after", None)
        if retry_after is not None:
            response.headers["Retry-After"] = str(max(1, int(round(retry_after))))
        return response

    @app.errorhandler(413)
    def _too_large(_exc):
        return jsonify({
            "status": "rejected",
            "error": "InvalidPayload",
            "message": "request body too large",
        }), 413

    # --- Routes ---

    @app.route("/health")
    def health():
        try:
            sessions = store.count_sessions()
            events = store.count_events()
            storage_ok = True
        except Exception:
            logger.exception("Health check could not read storage")
            sessions = events = None
            storage_ok = False
        return jsonify({
            "status": "healthy" if storage_ok else "degraded",
            "environment": config.app_env,
            "storage": storage_ok,
            "sessions": sessions,
            "events": events,
            "ingest": metrics.snapshot(),
            "validation": validator.get_stats(),
        }), 200 if storage_ok else 503

    @app.route("/api/events", methods=["POST"])
    def ingest_events():
        result = gate.ingest(
            request.headers.get("Authorization"),
            lambda: request.get_data(cache=False),
            on_rate_decision=lambda d: setattr(g, "rate_decision", d),
        )
        return jsonify(result.to_dict()), 201

    def _owned_session(session_id):
        application_id = authenticator.authenticate(request.headers.get("Authorization"))
        info = ledger.get_session(session_id)
        if info is None or info.application_id != application_id:
            return None
        return info

    @app.route("/api/sessions/<session_id>")
    def session_detail(session_id):
        info = _owned_session(session_id)
        if info is None:
            return jsonify({"status": "not_found", "sessionId": session_id}), 404
        return jsonify(info.to_dict())

    @app.route("/api/sessions/<session_id>/events")
    def session_events(session_id):
        info = _owned_session(session_id)
        if info is None:
            return jsonify({"status": "not_found", "sessionId": session_id}), 404
        after = request.args.get("after", 0, type=int)
        limit = min(request.args.get("limit", MAX_EVENTS_PAGE, type=int), MAX_EVENTS_PAGE)
        events = ledger.events(session_id, after_sequence=after, limit=limit)
        return jsonify({
            "sessionId": session_id,
            "state": info.state.value,
            "events": events,
        })

    return app
