"""
HTTP Server
===========
Flask server exposing staging, discovery, research, outreach, follow-up and
queue operations as JSON endpoints.

Usage:
    ejendom-server                       # Start on 127.0.0.1:5060
    ejendom-server --port 8000           # Custom port
    ejendom-server --no-scheduler        # No background drain / sweep jobs

Errors:
    ValidationError -> 400, NotFoundError -> 404, ConflictError -> 409.
    Collaborator failures answer 200 with {"error", "hint"} and any partial data.

Security:
    - Binds to 127.0.0.1 by default (localhost only)
    - Optional bearer token (--auth-token or EJENDOM_SERVER_TOKEN)
"""

import argparse
import functools
import logging
import os
import secrets

from flask import Flask, jsonify, request

from .config import Config
from .errors import (
    ConflictError, NotFoundError, TransientCollaboratorError, ValidationError,
)
from .outreach import QueuedMessage, followup_candidates, prepare_followups
from .outreach.followup import DEFAULT_PREPARE_LIMIT, FOLLOWUP_AFTER_DAYS

log = logging.getLogger("ejendom.server")

app = Flask(__name__)

# Auth token, set at startup
_auth_token: str = ""

# Singletons
_ctx = None
_config = None

HINTS = {
    "llm": "Set OPENAI_API_KEY or ANTHROPIC_API_KEY (or api_key in ejendom-agent.yaml).",
    "dawa": "DAWA did not answer. Check network access to dawa.aws.dk and retry.",
    "scaffolding": "The permit feed did not answer. Retry later.",
    "default": "A research collaborator failed. Retry later.",
}


def _require_auth(f):
    """Decorator: require Bearer token authentication on endpoints."""
    @functools.wraps(f)
    def decorated(*args, **kwargs):
        if not _auth_token:
            return f(*args, **kwargs)

        auth_header = request.headers.get("Authorization", "")
        if not auth_header.startswith("Bearer "):
            return jsonify({"error": "Authentication required. Pass 'Authorization: Bearer <token>' header."}), 401

        provided = auth_header[7:]
        if not secrets.compare_digest(provided, _auth_token):
            return jsonify({"error": "Invalid authentication token."}), 403

        return f(*args, **kwargs)
    return decorated


def _get_config() -> Config:
    global _config
    if _config is None:
        _config = Config.load()
    return _config


def _get_context():
    global _ctx
    if _ctx is None:
        _ctx = _get_config().create_context()
    return _ctx


def _body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _number(data: dict, key: str, default):
    value = data.get(key, default)
    try:
        return type(default)(value)
    except (TypeError, ValueError):
        raise ValidationError(f"'{key}' must be a number")


def _degraded(error: str, hint_key: str = "default", **partial):
    payload = {"error": error, "hint": HINTS.get(hint_key, HINTS["default"])}
    payload.update(partial)
    return jsonify(payload), 200


# --- Error mapping ---

@app.errorhandler(ValidationError)
def _validation_error(e):
    return jsonify({"error": str(e)}), 400


@app.errorhandler(NotFoundError)
def _not_found(e):
    return jsonify({"error": str(e)}), 404


@app.errorhandler(ConflictError)
def _conflict(e):
    return jsonify({"error": str(e), "existing_id": e.existing_id}), 409


@app.errorhandler(TransientCollaboratorError)
def _collaborator_error(e):
    return _degraded(str(e), e.collaborator)


# --- Health ---

@app.route("/health", methods=["GET"])
def health():
    """Health check. Returns minimal info (no internal state leakage)."""
    return jsonify({"status": "ok"})


# --- Staging ---

@app.route("/staging", methods=["GET"])
@_require_auth
def staging_list():
    args = request.args
    records = _get_context().staging.list(
        stage=args.get("stage") or None,
        source=args.get("source") or None,
        city=args.get("city") or None,
        search=args.get("search") or None,
    )
    return jsonify({"items": [r.to_dict() for r in records], "count": len(records)})


@app.route("/staging", methods=["POST"])
@_require_auth
def staging_insert():
    record = _get_context().staging.insert(_body())
    return jsonify(record.to_dict()), 201


@app.route("/staging/counts", methods=["GET"])
@_require_auth
def staging_counts():
    return jsonify(_get_context().staging.counts())


@app.route("/staging/reject", methods=["POST"])
@_require_auth
def staging_reject():
    ids = _body().get("ids") or []
    if not isinstance(ids, list):
        raise ValidationError("'ids' must be a list")
    return jsonify(_get_context().staging.bulk_reject(ids))


@app.route("/staging/<staged_id>", methods=["PATCH"])
@_require_auth
def staging_update(staged_id):
    record = _get_context().staging.update(staged_id, _body())
    return jsonify(record.to_dict())


@app.route("/staging/<staged_id>", methods=["DELETE"])
@_require_auth
def staging_delete(staged_id):
    if not _get_context().staging.delete(staged_id):
        raise NotFoundError("Staged property", staged_id)
    return jsonify({"deleted": staged_id})


@app.route("/staging/<staged_id>/approve", methods=["POST"])
@_require_auth
def staging_approve(staged_id):
    return jsonify(_get_context().staging.approve(staged_id).to_dict())


@app.route("/staging/<staged_id>/push", methods=["POST"])
@_require_auth
def staging_push(staged_id):
    ctx = _get_context()
    record = ctx.staging.push(staged_id, ctx.property_store)
    return jsonify(record.to_dict())


@app.route("/staging/<staged_id>/research", methods=["POST"])
@_require_auth
def staging_research(staged_id):
    ctx = _get_context()
    if not ctx.has_llm:
        return _degraded("No LLM provider configured", "llm")
    run = ctx.engine.research_staged(staged_id, ctx.staging)
    return jsonify(run.to_dict())


# --- Discovery ---

@app.route("/discover/street", methods=["POST"])
@_require_auth
def discover_street():
    data = _body()
    config = _get_config()
    result = _get_context().pipeline.discover_street(
        data.get("street", ""),
        data.get("city", ""),
        min_score=_number(data, "min_score", float(config.min_score)),
        min_traffic=_number(data, "min_traffic", int(config.min_traffic)),
    )
    if result.error:
        return _degraded(result.error, "dawa", result=result.to_dict())
    return jsonify(result.to_dict())


@app.route("/discover/scaffolding", methods=["POST"])
@_require_auth
def discover_scaffolding():
    data = _body()
    result = _get_context().pipeline.discover_scaffolding(
        data.get("city", "København"),
        min_score=_number(data, "min_score", 5.0),
        min_traffic=_number(data, "min_traffic", 0),
    )
    if result.error:
        return _degraded(result.error, "scaffolding", result=result.to_dict())
    return jsonify(result.to_dict())


# --- Properties ---

@app.route("/properties", methods=["GET"])
@_require_auth
def properties_list():
    args = request.args
    records = _get_context().property_store.list(
        status=args.get("status") or None,
        city=args.get("city") or None,
        search=args.get("search") or None,
    )
    return jsonify({"items": [r.to_dict() for r in records], "count": len(records)})


@app.route("/properties/<property_id>/research", methods=["POST"])
@_require_auth
def properties_research(property_id):
    ctx = _get_context()
    if not ctx.has_llm:
        return _degraded("No LLM provider configured", "llm")
    run = ctx.engine.run(property_id)
    return jsonify(run.to_dict())


@app.route("/properties/mark-ready", methods=["POST"])
@_require_auth
def properties_mark_ready():
    data = _body()
    ids = data.get("ids") or ([data["id"]] if data.get("id") else [])
    if not ids:
        raise ValidationError("'ids' is required")
    store = _get_context().property_store
    updated, failed = [], {}
    for property_id in ids:
        try:
            updated.append(store.mark_ready(property_id).id)
        except (ValidationError, NotFoundError) as e:
            failed[property_id] = str(e)
    return jsonify({"updated": updated, "failed": failed})


# --- Follow-ups ---

@app.route("/followups", methods=["GET"])
@_require_auth
def followups_list():
    days = request.args.get("days", str(FOLLOWUP_AFTER_DAYS))
    if not days.isdigit():
        raise ValidationError("'days' must be a positive integer")
    candidates = followup_candidates(_get_context().property_store, days=int(days))
    return jsonify({"candidates": candidates, "count": len(candidates)})


@app.route("/followups/prepare", methods=["POST"])
@_require_auth
def followups_prepare():
    data = _body()
    ctx = _get_context()
    if ctx.analyst is None:
        return _degraded("No LLM provider configured", "llm")
    return jsonify(prepare_followups(
        ctx.property_store,
        ctx.analyst,
        days=_number(data, "days", FOLLOWUP_AFTER_DAYS),
        limit=_number(data, "limit", DEFAULT_PREPARE_LIMIT),
    ))


# --- Runs ---

@app.route("/runs", methods=["GET"])
@_require_auth
def runs_list():
    limit = request.args.get("limit", "20")
    if not limit.isdigit():
        raise ValidationError("'limit' must be a positive integer")
    runs = _get_context().engine.get_recent_runs(int(limit))
    return jsonify({"runs": [r.to_dict() for r in runs]})


@app.route("/raw-research", methods=["GET"])
@_require_auth
def raw_research_all():
    return jsonify(_get_context().engine.get_all_raw_research())


@app.route("/raw-research/<property_id>", methods=["GET"])
@_require_auth
def raw_research_one(property_id):
    data = _get_context().engine.get_raw_research(property_id)
    if data is None:
        raise NotFoundError("Research", property_id)
    return jsonify(data)


# --- Queue ---

@app.route("/queue", methods=["POST"])
@_require_auth
def queue_enqueue():
    data = _body()
    ctx = _get_context()
    if data.get("property_id") and not data.get("to"):
        record = ctx.property_store.get(data["property_id"])
        message = ctx.queue.enqueue_property(record, subject=data.get("subject"), body=data.get("body"))
    else:
        message = ctx.queue.enqueue(QueuedMessage(
            property_id=data.get("property_id", ""),
            to=data.get("to", ""),
            subject=data.get("subject", ""),
            body=data.get("body", ""),
            contact_name=data.get("contact_name", ""),
        ))
    return jsonify(message.to_dict()), 201


@app.route("/queue/stats", methods=["GET"])
@_require_auth
def queue_stats():
    return jsonify(_get_context().queue.stats())


@app.route("/queue/drain", methods=["POST"])
@_require_auth
def queue_drain():
    return jsonify(_get_context().queue.drain())


# --- Dashboard ---

@app.route("/dashboard", methods=["GET"])
@_require_auth
def dashboard():
    ctx = _get_context()
    return jsonify({
        "staging": ctx.staging.counts(),
        "properties": ctx.property_store.counts(),
        "queue": ctx.queue.stats(),
        "runs": [r.to_dict() for r in ctx.engine.get_recent_runs(5)],
        "discoveries": [r.to_dict() for r in ctx.pipeline.recent_results(5)],
        "llm": ctx.has_llm,
    })


def main():
    global _auth_token, _config

    parser = argparse.ArgumentParser(prog="ejendom-server", description="Ejendom Agent HTTP server")
    parser.add_argument("--port", type=int, default=5060)
    parser.add_argument("--host", default="127.0.0.1",
                        help="Bind address (default: 127.0.0.1, localhost only)")
    parser.add_argument("--auth-token", default=None,
                        help="Bearer token for API authentication (or set EJENDOM_SERVER_TOKEN env var)")
    parser.add_argument("--config", "-c", help="Path to config file")
    parser.add_argument("--no-scheduler", action="store_true", help="Disable background jobs")
    parser.add_argument("--verbose", "-v", action="store_true")
    args = parser.parse_args()

    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(level=level, format="%(name)s: %(message)s")

    _config = Config.load(args.config)
    _auth_token = args.auth_token or os.environ.get("EJENDOM_SERVER_TOKEN", "")

    if args.host != "127.0.0.1" and not _auth_token:
        _auth_token = secrets.token_urlsafe(32)
        print(f"WARNING: Binding to {args.host} with auto-generated auth token.")
        print(f"  Token: {_auth_token}")
        print(f"  Pass via: Authorization: Bearer {_auth_token}")
        print()

    ctx = _get_context()
    if not args.no_scheduler:
        from .scheduler import build_scheduler
        build_scheduler(ctx, _config).start()

    print(f"Ejendom Agent server starting on {args.host}:{args.port}")
    if _auth_token:
        print("  Authentication: enabled")
    else:
        print("  Authentication: disabled (localhost only)")
    app.run(host=args.host, port=args.port, debug=False)


if __name__ == "__main__":
    main()
