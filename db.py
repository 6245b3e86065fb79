import datetime
import logging
import sqlite3

from flask import current_app, g

logger = logging.getLogger(__name__)


SCHEMA = [
    '''CREATE TABLE IF NOT EXISTS users (
            id INTEGER PRIMARY KEY,
            email TEXT NOT NULL UNIQUE,
            name TEXT NOT NULL,
            password_hash TEXT NOT NULL,
            created_at TEXT NOT NULL
        )''',
    '''CREATE TABLE IF NOT EXISTS polls (
            id INTEGER PRIMARY KEY,
            title TEXT NOT NULL,
            description TEXT,
            created_by INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            is_public INTEGER NOT NULL DEFAULT 1,
            allow_anonymous_votes INTEGER NOT NULL DEFAULT 1,
            end_date TEXT
        )''',
    '''CREATE TABLE IF NOT EXISTS poll_options (
            id INTEGER PRIMARY KEY,
            poll_id INTEGER NOT NULL REFERENCES polls(id) ON DELETE CASCADE,
            option_text TEXT NOT NULL,
            position INTEGER NOT NULL,
            created_at TEXT NOT NULL
        )''',
    '''CREATE TABLE IF NOT EXISTS votes (
            id INTEGER PRIMARY KEY,
            poll_id INTEGER NOT NULL REFERENCES polls(id) ON DELETE CASCADE,
            option_id INTEGER NOT NULL REFERENCES poll_options(id) ON DELETE CASCADE,
            user_id INTEGER REFERENCES users(id) ON DELETE SET NULL,
            anonymous_user_id TEXT,
            ip_address TEXT,
            created_at TEXT NOT NULL,
            UNIQUE (poll_id, user_id),
            UNIQUE (poll_id, anonymous_user_id)
        )''',
    '''CREATE TABLE IF NOT EXISTS poll_shares (
            id INTEGER PRIMARY KEY,
            poll_id INTEGER NOT NULL REFERENCES polls(id) ON DELETE CASCADE,
            created_by INTEGER REFERENCES users(id) ON DELETE SET NULL,
            share_code TEXT NOT NULL UNIQUE,
            created_at TEXT NOT NULL,
            expires_at TEXT,
            password_hash TEXT
        )''',
    "CREATE INDEX IF NOT EXISTS idx_polls_public ON polls(is_public, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_polls_owner ON polls(created_by)",
    "CREATE INDEX IF NOT EXISTS idx_options_poll ON poll_options(poll_id, position)",
    "CREATE INDEX IF NOT EXISTS idx_votes_option ON votes(option_id)",
]


def now_iso():
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


def parse_iso(value):
    """Parse a stored timestamp, treating naive values as UTC."""
    if not value:
        return None
    dt = datetime.datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=datetime.timezone.utc)
    return dt


def get_db():
    db = getattr(g, '_database', None)
    if db is None:
        db = g._database = sqlite3.connect(current_app.config['DATABASE'])
        db.row_factory = sqlite3.Row
        db.execute("PRAGMA foreign_keys = ON")
    return db


def close_db(exception):
    db = getattr(g, '_database', None)
    if db is not None:
        db.close()
        g._database = None


def init_db():
    db = get_db()
    c = db.cursor()
    for statement in SCHEMA:
        c.execute(statement)
    db.commit()
    logger.info("Database ready at %s", current_app.config['DATABASE'])
