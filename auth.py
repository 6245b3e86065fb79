import logging
import re
from functools import wraps

from flask import g, jsonify, redirect, request, session, url_for
from werkzeug.security import check_password_hash, generate_password_hash

from db import get_db, now_iso
from polls import PollError, ValidationError

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PASSWORD_RE = re.compile(r"(?=.*[a-z])(?=.*[A-Z])(?=.*\d)")
MIN_PASSWORD_LENGTH = 8


class EmailTaken(PollError):
    status_code = 409


def register_user(name, email, password, confirm_password):
    name = (name or "").strip()
    email = (email or "").strip().lower()
    password = password or ""

    if len(name) < 2:
        raise ValidationError("Name must be at least 2 characters")
    if not EMAIL_RE.match(email):
        raise ValidationError("Please enter a valid email address")
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    if not PASSWORD_RE.match(password):
        raise ValidationError(
            "Password must contain at least one uppercase letter, one lowercase letter, and one number")
    if password != confirm_password:
        raise ValidationError("Passwords do not match")

    db = get_db()
    if db.execute("SELECT 1 FROM users WHERE email=?", (email,)).fetchone():
        raise EmailTaken("An account with this email already exists")
    with db:
        c = db.execute(
            "INSERT INTO users (email, name, password_hash, created_at) VALUES (?, ?, ?, ?)",
            (email, name, generate_password_hash(password), now_iso()))
    logger.info("Registered user %s", c.lastrowid)
    return c.lastrowid


def authenticate(email, password):
    email = (email or "").strip().lower()
    user = get_db().execute("SELECT * FROM users WHERE email=?", (email,)).fetchone()
    if user is None or not check_password_hash(user["password_hash"], password or ""):
        logger.warning("Failed sign-in for %s", email)
        return None
    return user


def get_user(user_id):
    return get_db().execute("SELECT * FROM users WHERE id=?", (user_id,)).fetchone()


def login_user(user):
    session.clear()
    session["user_id"] = user["id"]
    g.user = user


def logout_user():
    session.clear()
    g.user = None


def current_user():
    if "user" not in g:
        user_id = session.get("user_id")
        g.user = None
        if user_id is not None:
            g.user = get_user(user_id)
    return g.user


def current_user_id():
    user = current_user()
    return user["id"] if user else None


def login_required(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        if current_user() is None:
            if request.path.startswith("/api/"):
                return jsonify({"success": False, "error": "Auth session missing."}), 401
            return redirect(url_for("signin", next=request.path))
        return fn(*args, **kwargs)
    return wrapper
