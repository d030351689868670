# sew4mi/main.py
import hmac
import logging
import time

from flask import Flask, g, jsonify, request, session
from sqlalchemy import or_
from werkzeug.security import check_password_hash, generate_password_hash

from sew4mi.blueprints import (
    cron_bp,
    disputes_bp,
    escrow_bp,
    milestones_bp,
    notifications_bp,
    webhooks_bp,
)
from sew4mi.blueprints.common import current_user, json_body, json_error
from sew4mi.config import Config
from sew4mi.database import close_db, get_db, init_db
from sew4mi.models import User
from sew4mi.observability import (
    check_database_health,
    check_integrations,
    configure_logging,
    ensure_request_id,
    get_metrics_snapshot,
    increment_counter,
    observe_latency,
)

app = Flask(__name__)
Config.configure_app(app)
configure_logging(app)
app.register_blueprint(escrow_bp)
app.register_blueprint(milestones_bp)
app.register_blueprint(disputes_bp)
app.register_blueprint(cron_bp)
app.register_blueprint(webhooks_bp)
app.register_blueprint(notifications_bp)

logger = logging.getLogger(__name__)

USER_ROLES = ("customer", "tailor", "admin")

init_db()


@app.before_request
def before_request_logging():
    g.current_user = None
    if 'user_id' in session:
        g.current_user = get_db().get(User, session['user_id'])
    g.request_started_at = time.perf_counter()
    g.request_id = ensure_request_id()
    increment_counter(
        "http_requests_total",
        labels={"method": request.method, "endpoint": request.endpoint or request.path},
    )


@app.after_request
def after_request_logging(response):
    labels = {
        "method": request.method,
        "endpoint": request.endpoint or request.path,
        "status": str(response.status_code),
    }
    started = getattr(g, 'request_started_at', None)
    if started is not None:
        observe_latency("http_request_latency_ms", (time.perf_counter() - started) * 1000, labels=labels)
    response.headers[Config.REQUEST_ID_HEADER] = getattr(g, "request_id", "") or ""
    if response.status_code >= 500:
        increment_counter("http_errors_total", labels=labels)
        logger.error("Request finished with error status %s", response.status_code)
    else:
        logger.info("Request finished", extra={"status_code": response.status_code})
    return response


@app.teardown_appcontext
def teardown_db(exception):
    close_db(exception)


# ---------------------------------------------
# Health & metrics
# ---------------------------------------------

@app.route('/health', methods=['GET'])
def health():
    db_status = check_database_health()
    overall = "UP" if db_status.get("status") == "UP" else "DEGRADED"
    return jsonify({
        "status": overall,
        "components": {
            "database": db_status,
            "integrations": check_integrations(),
        },
    }), 200 if overall == "UP" else 503


@app.route('/admin/metrics', methods=['GET'])
def admin_metrics():
    user = current_user()
    if not user or not user.is_admin:
        return json_error("Forbidden", 403)
    return jsonify(get_metrics_snapshot())


# ---------------------------------------------
# Accounts
# ---------------------------------------------

@app.route('/api/auth/register', methods=['POST'])
def register():
    payload = json_body()
    username = (payload.get('username') or '').strip()
    email = (payload.get('email') or '').strip().lower()
    password = payload.get('password') or ''
    role = (payload.get('role') or 'customer').lower()

    if not username or not email or len(password) < 8:
        return json_error("username, email and a password of at least 8 characters are required", 400)
    if role not in USER_ROLES:
        return json_error(f"role must be one of {', '.join(USER_ROLES)}", 400)
    if role == 'admin':
        token = app.config.get("ADMIN_SIGNUP_TOKEN") or ""
        supplied = payload.get('admin_token') or ""
        if not token or not hmac.compare_digest(str(supplied).encode(), token.encode()):
            return json_error("Invalid admin signup token", 403)

    db = get_db()
    if db.query(User).filter(or_(User.username == username, User.email == email)).first():
        return json_error("Username or email already registered", 409)

    user = User(
        username=username,
        email=email,
        passwordHash=generate_password_hash(password),
        full_name=payload.get('full_name'),
        phone=payload.get('phone'),
        role=role,
    )
    db.add(user)
    db.commit()
    increment_counter("users_registered_total", labels={"role": role})
    return jsonify({"success": True, "user": user.to_dict()}), 201


@app.route('/api/auth/login', methods=['POST'])
def login():
    payload = json_body()
    user = get_db().query(User).filter_by(username=payload.get('username')).first()
    if not user or not check_password_hash(user.passwordHash, payload.get('password') or ''):
        increment_counter("login_failures_total")
        return json_error("Invalid username or password", 401)
    session.clear()
    session['user_id'] = user.userID
    return jsonify({"success": True, "user": user.to_dict()})


@app.route('/api/auth/logout', methods=['POST'])
def logout():
    session.clear()
    return jsonify({"success": True})


@app.route('/api/auth/me', methods=['GET'])
def me():
    user = current_user()
    if not user:
        return json_error("Not authenticated", 401)
    return jsonify({"user": user.to_dict()})
