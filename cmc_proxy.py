import os
import logging
from datetime import datetime, timezone

from flask import Blueprint, Flask, Response, current_app, jsonify, request
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.exceptions import HTTPException
import requests

# ----------------------
# Configuration
# ----------------------
CMC_API_KEY = os.getenv("CMC_API_KEY")
CMC_API_BASE = os.getenv("CMC_API_BASE", "https://pro-api.coinmarketcap.com/v1")
UPSTREAM_TIMEOUT = float(os.getenv("UPSTREAM_TIMEOUT", "15"))
RATE_LIMIT = os.getenv("RATE_LIMIT", "60 per minute")
RATE_LIMIT_STORAGE_URI = os.getenv("RATE_LIMIT_STORAGE_URI", "memory://")
RATE_LIMIT_ENABLED = os.getenv("RATE_LIMIT_ENABLED", "false").lower() in ("1", "true", "yes")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

API_KEY_HEADER = "X-CMC_PRO_API_KEY"
API_KEY_HINT = "Set CMC_API_KEY in the proxy's environment variables"

# Known paths answer every method; only OPTIONS is special-cased
ROUTE_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE"]

# Sent on every response, including preflight
CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
    "Access-Control-Max-Age": "86400",
}

# Logging
logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger("cmc-proxy")

proxy = Blueprint("proxy", __name__)


# ----------------------
# Helpers
# ----------------------
def json_response(payload, status: int = 200) -> Response:
    """Serialize payload as JSON and attach the CORS headers."""
    resp = jsonify(payload)
    resp.status_code = status
    for name, value in CORS_HEADERS.items():
        resp.headers[name] = value
    return resp


def missing_api_key_response() -> Response:
    logger.warning("CMC_API_KEY is not configured")
    return json_response({"error": "API key not configured", "hint": API_KEY_HINT}, 500)


def upstream_error_message(data) -> str:
    """Pull status.error_message out of an upstream body, if it has one."""
    status = data.get("status") if isinstance(data, dict) else None
    if isinstance(status, dict) and status.get("error_message"):
        return status["error_message"]
    return "Unknown error"


def call_upstream(resource: str, params: dict, api_key: str) -> Response:
    """Issue one GET to the upstream API and normalize its answer.

    A 2xx body is relayed as-is with status 200. Any other status becomes an
    error envelope carrying the upstream status code. Transport failures and
    non-JSON bodies are left to propagate.
    """
    url = f"{current_app.config['CMC_API_BASE'].rstrip('/')}/{resource}"
    session = current_app.extensions["cmc_session"]
    resp = session.get(
        url,
        params=params,
        headers={
            API_KEY_HEADER: api_key,
            "Accept": "application/json",
        },
        timeout=current_app.config["UPSTREAM_TIMEOUT"],
    )
    logger.info("Upstream %s responded %s", resource, resp.status_code)

    data = resp.json()

    if not 200 <= resp.status_code < 300:
        message = upstream_error_message(data)
        logger.warning("Upstream %s error %s: %s", resource, resp.status_code, message)
        return json_response({
            "error": "CoinMarketCap API error",
            "status": resp.status_code,
            "message": message,
        }, resp.status_code)

    return json_response(data)


# ----------------------
# Endpoints
# ----------------------
@proxy.route("/health", methods=ROUTE_METHODS)
def health_check():
    now = datetime.now(timezone.utc)
    timestamp = now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"
    return json_response({"status": "ok", "timestamp": timestamp})


@proxy.route("/api/quotes/latest", methods=ROUTE_METHODS)
def quotes_latest():
    api_key = current_app.config.get("CMC_API_KEY")
    if not api_key:
        return missing_api_key_response()

    symbol = request.args.get("symbol")
    coin_id = request.args.get("id")
    if not symbol and not coin_id:
        return json_response({"error": "Missing required parameter: symbol or id"}, 400)

    # id wins when both are given
    params = {"id": coin_id} if coin_id else {"symbol": symbol}
    return call_upstream("cryptocurrency/quotes/latest", params, api_key)


@proxy.route("/api/quotes/historical", methods=ROUTE_METHODS)
def quotes_historical():
    api_key = current_app.config.get("CMC_API_KEY")
    if not api_key:
        return missing_api_key_response()

    coin_id = request.args.get("id")
    if not coin_id:
        return json_response({"error": "Missing required parameter: id"}, 400)

    params = {"id": coin_id, "interval": request.args.get("interval") or "daily"}
    for bound in ("time_start", "time_end"):
        value = request.args.get(bound)
        if value:
            params[bound] = value
    return call_upstream("cryptocurrency/quotes/historical", params, api_key)


@proxy.route("/api/map", methods=ROUTE_METHODS)
def symbol_map():
    api_key = current_app.config.get("CMC_API_KEY")
    if not api_key:
        return missing_api_key_response()

    symbol = request.args.get("symbol")
    if not symbol:
        return json_response({"error": "Missing required parameter: symbol"}, 400)

    return call_upstream("cryptocurrency/map", {"symbol": symbol}, api_key)


# ----------------------
# Hooks & error handlers
# ----------------------
def handle_preflight():
    if request.method == "OPTIONS":
        resp = Response(status=204, headers=CORS_HEADERS)
        del resp.headers["Content-Type"]
        return resp
    return None


def not_found(e):
    return json_response({"error": "Not found"}, 404)


def rate_limited(e):
    logger.warning("Rate limit exceeded for %s", get_remote_address())
    return json_response({"error": "Rate limit exceeded", "message": e.description}, 429)


def http_error(e: HTTPException):
    return json_response({"error": e.name}, e.code or 500)


def internal_error(e: Exception):
    logger.exception("Unhandled error on %s: %s", request.path, e)
    return json_response({"error": "Internal server error", "message": str(e)}, 500)


# ----------------------
# App Setup
# ----------------------
def create_app(config=None, session=None) -> Flask:
    """Build the proxy app.

    ``config`` overrides values read from the environment; ``session`` is the
    HTTP client used for upstream calls (a ``requests.Session`` by default).
    """
    app = Flask(__name__)
    app.config.update(
        CMC_API_KEY=CMC_API_KEY,
        CMC_API_BASE=CMC_API_BASE,
        UPSTREAM_TIMEOUT=UPSTREAM_TIMEOUT,
        RATE_LIMIT=RATE_LIMIT,
        RATELIMIT_STORAGE_URI=RATE_LIMIT_STORAGE_URI,
        RATELIMIT_ENABLED=RATE_LIMIT_ENABLED,
    )
    if config:
        app.config.update(config)
    app.json.sort_keys = False

    app.extensions["cmc_session"] = session or requests.Session()

    # Preflight must answer before the limiter sees the request
    app.before_request(handle_preflight)

    limiter = Limiter(
        key_func=get_remote_address,
        app=app,
        default_limits=[app.config["RATE_LIMIT"]],
        storage_uri=app.config["RATELIMIT_STORAGE_URI"],
    )
    limiter.exempt(health_check)

    app.register_blueprint(proxy)

    app.register_error_handler(404, not_found)
    app.register_error_handler(429, rate_limited)
    app.register_error_handler(HTTPException, http_error)
    app.register_error_handler(Exception, internal_error)

    return app


app = create_app()

if __name__ == "__main__":
    app.run(host="0.0.0.0", port=int(os.getenv("PORT", "8080")))
