"""Poll storage: polls, options, votes, results and share links."""

import datetime
import logging
import secrets
import sqlite3
import string

from werkzeug.security import check_password_hash, generate_password_hash

from db import get_db, now_iso, parse_iso

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 200
MAX_OPTION_LENGTH = 100
MIN_OPTIONS = 2
MAX_OPTIONS = 6

SHARE_CODE_ALPHABET = string.ascii_lowercase + string.digits
SHARE_CODE_LENGTH = 8


class PollError(Exception):
    status_code = 500

    def __init__(self, message):
        super().__init__(message)
        self.message = message


class ValidationError(PollError):
    status_code = 400


class AuthenticationRequired(PollError):
    status_code = 401


class IncorrectPassword(PollError):
    status_code = 401


class PermissionDenied(PollError):
    status_code = 403


class ShareLinkExpired(PollError):
    status_code = 403


class PollNotFound(PollError):
    status_code = 404


class AlreadyVoted(PollError):
    status_code = 409


# ---------------- Validation ----------------

def _clean_title(title):
    if title is not None and not isinstance(title, str):
        raise ValidationError("Title must be a string")
    title = (title or "").strip()
    if not title:
        raise ValidationError("Title is required")
    if len(title) > MAX_TITLE_LENGTH:
        raise ValidationError(f"Title must be at most {MAX_TITLE_LENGTH} characters")
    return title


def parse_option_id(value):
    """Accept an int or a string of digits; bools, floats and anything else are invalid."""
    if isinstance(value, bool):
        raise ValidationError("Invalid option")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    raise ValidationError("Invalid option")


def validate_poll_input(title, options):
    title = _clean_title(title)

    cleaned = [o.strip() for o in options if o and o.strip()]
    if len(cleaned) < MIN_OPTIONS:
        raise ValidationError("At least two options are required")
    if len(cleaned) > MAX_OPTIONS:
        raise ValidationError(f"At most {MAX_OPTIONS} options are allowed")
    for opt in cleaned:
        if len(opt) > MAX_OPTION_LENGTH:
            raise ValidationError(f"Option must be less than {MAX_OPTION_LENGTH} characters")
    if len({o.lower() for o in cleaned}) != len(cleaned):
        raise ValidationError("Options must be unique")
    return title, cleaned


def parse_timestamp(value):
    """Normalize an ISO date/datetime to an aware UTC-or-offset ISO string. Empty gives None."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime.datetime):
        dt = value
    else:
        try:
            dt = datetime.datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError("Invalid date, expected ISO format")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=datetime.timezone.utc)
    return dt.isoformat()


# ---------------- Polls ----------------

def create_poll(user_id, title, description, options, is_public=True,
                allow_anonymous_votes=True, end_date=None):
    if not user_id:
        raise AuthenticationRequired("User must be authenticated to create a poll")
    title, options = validate_poll_input(title, options)
    description = (description or "").strip() or None
    end_date = parse_timestamp(end_date)

    db = get_db()
    now = now_iso()
    with db:
        c = db.execute(
            """INSERT INTO polls (title, description, created_by, created_at, updated_at,
                                  is_public, allow_anonymous_votes, end_date)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (title, description, user_id, now, now,
             int(bool(is_public)), int(bool(allow_anonymous_votes)), end_date))
        poll_id = c.lastrowid
        db.executemany(
            "INSERT INTO poll_options (poll_id, option_text, position, created_at) VALUES (?, ?, ?, ?)",
            [(poll_id, text, i, now) for i, text in enumerate(options)])
    logger.info("Poll %s created by user %s with %d options", poll_id, user_id, len(options))
    return poll_id


def get_poll(poll_id):
    db = get_db()
    poll = db.execute("SELECT * FROM polls WHERE id=?", (poll_id,)).fetchone()
    if poll is None:
        raise PollNotFound("Poll not found")
    options = db.execute(
        "SELECT * FROM poll_options WHERE poll_id=? ORDER BY position, id", (poll_id,)).fetchall()
    return poll, options


def poll_to_dict(poll):
    return {
        "id": poll["id"],
        "title": poll["title"],
        "description": poll["description"],
        "created_by": poll["created_by"],
        "created_at": poll["created_at"],
        "updated_at": poll["updated_at"],
        "is_public": bool(poll["is_public"]),
        "allow_anonymous_votes": bool(poll["allow_anonymous_votes"]),
        "end_date": poll["end_date"],
    }


def option_to_dict(option):
    return {
        "id": option["id"],
        "poll_id": option["poll_id"],
        "option_text": option["option_text"],
        "created_at": option["created_at"],
    }


def list_public_polls(limit=6):
    db = get_db()
    polls = db.execute(
        "SELECT * FROM polls WHERE is_public=1 ORDER BY created_at DESC, id DESC LIMIT ?",
        (limit,)).fetchall()
    featured = []
    for poll in polls:
        results = poll_results(poll["id"])
        data = poll_to_dict(poll)
        data["options"] = [
            {"id": r["option_id"], "option_text": r["option_text"], "votes": r["vote_count"]}
            for r in results
        ]
        data["totalVotes"] = sum(r["vote_count"] for r in results)
        featured.append(data)
    return featured


def list_user_polls(user_id):
    db = get_db()
    return db.execute(
        """SELECT p.*,
                  (SELECT COUNT(*) FROM votes v WHERE v.poll_id = p.id) AS total_votes,
                  (SELECT COUNT(*) FROM poll_options o WHERE o.poll_id = p.id) AS option_count
           FROM polls p
           WHERE p.created_by=?
           ORDER BY p.created_at DESC, p.id DESC""", (user_id,)).fetchall()


def _owned_poll(poll_id, user_id):
    if not user_id:
        raise AuthenticationRequired("You must be signed in")
    poll, _ = get_poll(poll_id)
    if poll["created_by"] != user_id:
        raise PermissionDenied("Only the poll creator can do that")
    return poll


def update_poll(poll_id, user_id, title=None, description=None, is_public=None,
                allow_anonymous_votes=None, end_date=None, clear_end_date=False):
    poll = _owned_poll(poll_id, user_id)

    fields = {}
    if title is not None:
        fields["title"] = _clean_title(title)
    if description is not None:
        if not isinstance(description, str):
            raise ValidationError("Description must be a string")
        fields["description"] = description.strip() or None
    for name, value in (("is_public", is_public), ("allow_anonymous_votes", allow_anonymous_votes)):
        if value is None:
            continue
        if not isinstance(value, bool):
            raise ValidationError(f"{name} must be true or false")
        fields[name] = int(value)
    if clear_end_date:
        fields["end_date"] = None
    elif end_date is not None:
        if not isinstance(end_date, (str, datetime.datetime)):
            raise ValidationError("Invalid date, expected ISO format")
        fields["end_date"] = parse_timestamp(end_date)
    fields["updated_at"] = now_iso()

    assignments = ", ".join(f"{name}=?" for name in fields)
    db = get_db()
    with db:
        db.execute(f"UPDATE polls SET {assignments} WHERE id=?", (*fields.values(), poll["id"]))
    logger.info("Poll %s updated by user %s: %s", poll_id, user_id, sorted(fields))
    return get_poll(poll_id)[0]


def delete_poll(poll_id, user_id):
    _owned_poll(poll_id, user_id)
    db = get_db()
    with db:
        db.execute("DELETE FROM polls WHERE id=?", (poll_id,))
    logger.info("Poll %s deleted by user %s", poll_id, user_id)


def is_realtime(poll, now=None):
    end = parse_iso(poll["end_date"])
    if end is None:
        return True
    now = now or datetime.datetime.now(datetime.timezone.utc)
    return end > now


# ---------------- Votes ----------------

def vote_on_poll(poll_id, option_id, user_id=None, anonymous_user_id=None, ip_address=None):
    poll, options = get_poll(poll_id)
    if not is_realtime(poll):
        raise PermissionDenied("This poll has ended")

    option_id = parse_option_id(option_id)
    if option_id not in {o["id"] for o in options}:
        raise ValidationError("Invalid option")

    if not user_id:
        if not poll["allow_anonymous_votes"]:
            raise PermissionDenied("This poll does not allow anonymous votes")
        if not anonymous_user_id:
            raise ValidationError("Anonymous user ID is required for anonymous voting")
    else:
        anonymous_user_id = None

    db = get_db()
    try:
        with db:
            db.execute(
                """INSERT INTO votes (poll_id, option_id, user_id, anonymous_user_id, ip_address, created_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (poll_id, option_id, user_id or None, anonymous_user_id, ip_address, now_iso()))
    except sqlite3.IntegrityError:
        logger.info("Duplicate vote on poll %s rejected (user=%s, anonymous=%s)",
                    poll_id, user_id, anonymous_user_id)
        raise AlreadyVoted("You have already voted on this poll")

    total = db.execute("SELECT COUNT(*) FROM votes WHERE poll_id=?", (poll_id,)).fetchone()[0]
    logger.info("Vote cast on poll %s option %s (total %d)", poll_id, option_id, total)
    return total


def has_voted(poll_id, user_id=None, anonymous_user_id=None):
    """Return the option id the voter picked, or None."""
    db = get_db()
    if user_id:
        row = db.execute("SELECT option_id FROM votes WHERE poll_id=? AND user_id=?",
                         (poll_id, user_id)).fetchone()
    elif anonymous_user_id:
        row = db.execute("SELECT option_id FROM votes WHERE poll_id=? AND anonymous_user_id=?",
                         (poll_id, anonymous_user_id)).fetchone()
    else:
        return None
    return row["option_id"] if row else None


def poll_results(poll_id, filter_user_id=None, filter_anonymous_user_id=None):
    conditions = ["v.option_id = o.id"]
    params = []
    if filter_user_id:
        conditions.append("v.user_id = ?")
        params.append(filter_user_id)
    if filter_anonymous_user_id:
        conditions.append("v.anonymous_user_id = ?")
        params.append(filter_anonymous_user_id)

    db = get_db()
    rows = db.execute(
        f"""SELECT o.id AS option_id, o.option_text, COUNT(v.id) AS vote_count
            FROM poll_options o
            LEFT JOIN votes v ON {' AND '.join(conditions)}
            WHERE o.poll_id = ?
            GROUP BY o.id
            ORDER BY o.position, o.id""", (*params, poll_id)).fetchall()
    return [dict(r) for r in rows]


def summarize(results):
    total = sum(r["vote_count"] for r in results)
    chart_data = [{"name": r["option_text"], "value": r["vote_count"]} for r in results]
    summary = [
        {
            "option": r["option_text"],
            "votes": r["vote_count"],
            "percentage": round(r["vote_count"] * 100.0 / total, 2) if total else 0.0,
        }
        for r in results
    ]
    return chart_data, summary, total


# ---------------- Share links ----------------

def generate_share_code():
    return "".join(secrets.choice(SHARE_CODE_ALPHABET) for _ in range(SHARE_CODE_LENGTH))


def create_share(poll_id, created_by=None, password=None, expires_at=None):
    get_poll(poll_id)
    expires_at = parse_timestamp(expires_at)
    password_hash = generate_password_hash(password) if password else None

    db = get_db()
    for _ in range(5):
        code = generate_share_code()
        try:
            with db:
                db.execute(
                    """INSERT INTO poll_shares (poll_id, created_by, share_code, created_at,
                                                expires_at, password_hash)
                       VALUES (?, ?, ?, ?, ?, ?)""",
                    (poll_id, created_by, code, now_iso(), expires_at, password_hash))
        except sqlite3.IntegrityError:
            logger.warning("Share code collision for %s, retrying", code)
            continue
        logger.info("Share link %s created for poll %s", code, poll_id)
        return db.execute("SELECT * FROM poll_shares WHERE share_code=?", (code,)).fetchone()
    raise PollError("Failed to create poll share")


def get_share(share_code):
    db = get_db()
    share = db.execute("SELECT * FROM poll_shares WHERE share_code=?", (share_code,)).fetchone()
    if share is None:
        raise PollNotFound("Share link not found")
    poll, options = get_poll(share["poll_id"])
    return share, poll, options


def check_share_access(share, password=None, now=None):
    expires = parse_iso(share["expires_at"])
    now = now or datetime.datetime.now(datetime.timezone.utc)
    if expires is not None and expires < now:
        raise ShareLinkExpired("Share link has expired")
    if share["password_hash"]:
        if not password or not check_password_hash(share["password_hash"], password):
            raise IncorrectPassword("Incorrect password")
