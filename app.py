
from flask import Flask, request, render_template, redirect, url_for, send_file, jsonify, make_response, flash, abort
from flask_socketio import SocketIO
from werkzeug.exceptions import HTTPException
import io, uuid, os, logging

import polls
from auth import (EmailTaken, authenticate, current_user, current_user_id, get_user, login_required,
                  login_user, logout_user, register_user)
from db import close_db, init_db
from exports import (CHART_TYPES, qr_data_url, qr_png, results_csv, results_pdf, results_png,
                     social_share_links)
from polls import PollError, PollNotFound, ValidationError

logging.basicConfig(
    level=os.environ.get('LOG_LEVEL', 'INFO').upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("pollapp")

PRODUCTION = os.environ.get('FLASK_ENV') == 'production'

app = Flask(__name__)
app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', 'dev-secret-key')
app.config['DATABASE'] = os.environ.get('POLL_DB', 'poll.db')
app.config['BASE_URL'] = os.environ.get('BASE_URL', '').rstrip('/')
app.config['FEATURED_POLLS_LIMIT'] = int(os.environ.get('FEATURED_POLLS_LIMIT', '6'))
app.config['SESSION_COOKIE_SAMESITE'] = 'Lax'
app.config['SESSION_COOKIE_SECURE'] = PRODUCTION

ANONYMOUS_COOKIE = "anonymous_user_id"
ANONYMOUS_COOKIE_MAX_AGE = 60 * 60 * 24 * 365

# Production configuration
if PRODUCTION:
    socketio = SocketIO(app, cors_allowed_origins="*", async_mode='eventlet')
else:
    socketio = SocketIO(app, cors_allowed_origins="*")

app.teardown_appcontext(close_db)


@app.cli.command("init-db")
def init_db_command():
    """Create the database tables."""
    init_db()
    print("Initialized the database.")


@app.context_processor
def inject_user():
    return {"current_user": current_user()}


# ---------------- Utils -------------
def is_api_request():
    return request.path.startswith("/api/")


def options_from_form(form):
    keyed = []
    for key, value in form.items(multi=True):
        if key.startswith("option-"):
            suffix = key[len("option-"):]
            keyed.append((int(suffix) if suffix.isdigit() else 0, value))
    return [value for _, value in sorted(keyed, key=lambda kv: kv[0])]


def anonymous_id():
    """Return (anonymous id, True if it still has to be set as a cookie)."""
    existing = request.cookies.get(ANONYMOUS_COOKIE)
    if existing:
        return existing, False
    return str(uuid.uuid4()), True


def set_anonymous_cookie(resp, anon_id):
    resp.set_cookie(ANONYMOUS_COOKIE, anon_id, max_age=ANONYMOUS_COOKIE_MAX_AGE, path="/",
                    samesite="Lax", secure=PRODUCTION, httponly=True)


def cast_vote(poll_id, option_id, anon_id):
    user_id = current_user_id()
    total = polls.vote_on_poll(poll_id, option_id, user_id=user_id,
                               anonymous_user_id=None if user_id else anon_id,
                               ip_address=request.remote_addr)
    socketio.emit("vote_cast", {"poll_id": poll_id, "total_votes": total})
    return total


def base_url():
    return (request.args.get("baseUrl") or app.config['BASE_URL'] or request.host_url).rstrip("/")


def share_url_for(share_code, base=None):
    return f"{base or base_url()}/poll/share/{share_code}"


def results_payload(poll, options, results):
    chart_data, summary, _ = polls.summarize(results)
    return {
        "success": True,
        "poll": polls.poll_to_dict(poll),
        "options": [polls.option_to_dict(o) for o in options],
        "results": results,
        "chartData": chart_data,
        "numericalSummary": summary,
        "isRealtime": polls.is_realtime(poll),
    }


def attachment(data, mimetype, filename):
    return send_file(io.BytesIO(data), mimetype=mimetype, as_attachment=True, download_name=filename)


# ---------------- Errors -------------
@app.errorhandler(PollError)
def handle_poll_error(e):
    if is_api_request():
        return jsonify({"success": False, "error": e.message}), e.status_code
    if isinstance(e, PollNotFound):
        return render_template("not_found.html"), 404
    return e.message, e.status_code


@app.errorhandler(404)
def not_found(e):
    if is_api_request():
        return jsonify({"success": False, "error": "Not found"}), 404
    return render_template("not_found.html"), 404


@app.errorhandler(Exception)
def handle_unexpected(e):
    if isinstance(e, HTTPException):
        if is_api_request():
            return jsonify({"success": False, "error": e.description or e.name}), e.code
        return e
    logger.exception("Unhandled error on %s %s", request.method, request.path)
    if is_api_request():
        return jsonify({"success": False, "error": "Internal server error"}), 500
    return "Internal server error", 500


# ---------------- Pages -------------
@app.route("/")
def home():
    featured = polls.list_public_polls(app.config['FEATURED_POLLS_LIMIT'])
    return render_template("home.html", polls=featured)


@app.route("/signup", methods=["GET", "POST"])
def signup():
    if request.method == "POST":
        try:
            user_id = register_user(request.form.get("name"), request.form.get("email"),
                                    request.form.get("password"), request.form.get("confirmPassword"))
        except (ValidationError, EmailTaken) as e:
            flash(e.message, "error")
            return render_template("signup.html", form=request.form), e.status_code
        login_user(get_user(user_id))
        flash("Welcome! Your account has been created.", "success")
        return redirect(url_for("home"))
    return render_template("signup.html", form={})


@app.route("/signin", methods=["GET", "POST"])
def signin():
    next_url = request.values.get("next") or ""
    if not next_url.startswith("/") or next_url.startswith("//"):
        next_url = url_for("home")
    if request.method == "POST":
        user = authenticate(request.form.get("email"), request.form.get("password"))
        if user is None:
            flash("Invalid email or password.", "error")
            return render_template("signin.html", next=next_url), 401
        login_user(user)
        return redirect(next_url)
    return render_template("signin.html", next=next_url)


@app.route("/signout", methods=["POST"])
def signout():
    logout_user()
    return redirect(url_for("home"))


@app.route("/create", methods=["GET", "POST"])
@login_required
def create_poll():
    if request.method == "POST":
        try:
            poll_id = polls.create_poll(
                current_user_id(),
                request.form.get("title"),
                request.form.get("description"),
                options_from_form(request.form),
                is_public=request.form.get("isPublic") == "true",
                allow_anonymous_votes=request.form.get("allowAnonymousVotes") == "true",
                end_date=request.form.get("endDate") or None,
            )
        except ValidationError as e:
            flash(e.message, "error")
            return render_template("create.html", form=request.form,
                                   options=options_from_form(request.form)), 400
        flash("Poll created!", "success")
        return redirect(url_for("poll_view", poll_id=poll_id))
    return render_template("create.html", form={}, options=["", ""])


@app.route("/my-polls")
@login_required
def my_polls():
    return render_template("my_polls.html", polls=polls.list_user_polls(current_user_id()))


@app.route("/poll/<int:poll_id>/delete", methods=["POST"])
@login_required
def delete_poll(poll_id):
    try:
        polls.delete_poll(poll_id, current_user_id())
        flash("Poll deleted.", "success")
    except PollError as e:
        flash(e.message, "error")
    return redirect(url_for("my_polls"))


@app.route("/poll/<int:poll_id>", methods=["GET", "POST"])
def poll_view(poll_id):
    try:
        poll, options = polls.get_poll(poll_id)
    except PollNotFound:
        abort(404)

    anon_id, new_anon = anonymous_id()
    user_id = current_user_id()

    if request.method == "POST":
        option_id = request.form.get("option")
        resp = make_response(redirect(url_for("poll_view", poll_id=poll_id)))
        if not option_id:
            flash("No option selected.", "error")
            return resp
        try:
            cast_vote(poll_id, option_id, anon_id)
            flash("Thanks for voting!", "success")
        except PollError as e:
            flash(e.message, "error")
        if new_anon and not user_id:
            set_anonymous_cookie(resp, anon_id)
        return resp

    user_choice = polls.has_voted(poll_id, user_id=user_id,
                                  anonymous_user_id=None if new_anon else anon_id)
    realtime = polls.is_realtime(poll)
    is_owner = user_id is not None and user_id == poll["created_by"]
    show_results = user_choice is not None or not realtime or is_owner
    _, summary, total = polls.summarize(polls.poll_results(poll_id))

    link = url_for("poll_view", poll_id=poll_id, _external=True)
    return render_template("poll.html",
                           poll=poll,
                           options=options,
                           user_choice=user_choice,
                           can_vote=realtime and user_choice is None
                           and (user_id is not None or bool(poll["allow_anonymous_votes"])),
                           is_realtime=realtime,
                           show_results=show_results,
                           summary=summary,
                           total_votes=total,
                           link=link,
                           social=social_share_links(link, poll["title"]),
                           chart_types=CHART_TYPES)


@app.route("/poll/share/<code>")
def shared_poll(code):
    try:
        _, poll, _ = polls.get_share(code)
    except PollNotFound:
        abort(404)
    return redirect(url_for("poll_view", poll_id=poll["id"]))


@app.route("/qr/<int:poll_id>")
def qr_code(poll_id):
    polls.get_poll(poll_id)
    link = url_for("poll_view", poll_id=poll_id, _external=True)
    return send_file(io.BytesIO(qr_png(link)), mimetype="image/png")


# ---------------- API -------------
@app.route("/api/polls", methods=["POST"])
@login_required
def api_create_poll():
    poll_id = polls.create_poll(
        current_user_id(),
        request.form.get("title"),
        request.form.get("description"),
        options_from_form(request.form),
        is_public=request.form.get("isPublic") == "true",
        allow_anonymous_votes=request.form.get("allowAnonymousVotes") == "true",
        end_date=request.form.get("endDate") or None,
    )
    return jsonify({"success": True, "pollId": poll_id}), 201


@app.route("/api/polls", methods=["GET"])
def api_featured_polls():
    return jsonify({"success": True,
                    "polls": polls.list_public_polls(app.config['FEATURED_POLLS_LIMIT'])})


@app.route("/api/polls/<int:poll_id>", methods=["GET"])
def api_get_poll(poll_id):
    poll, options = polls.get_poll(poll_id)
    return jsonify({"success": True, "poll": polls.poll_to_dict(poll),
                    "options": [polls.option_to_dict(o) for o in options]})


@app.route("/api/polls/<int:poll_id>", methods=["PATCH"])
@login_required
def api_update_poll(poll_id):
    body = request.get_json(silent=True) or {}
    poll = polls.update_poll(
        poll_id, current_user_id(),
        title=body.get("title"),
        description=body.get("description"),
        is_public=body.get("isPublic"),
        allow_anonymous_votes=body.get("allowAnonymousVotes"),
        end_date=body.get("endDate"),
        clear_end_date="endDate" in body and body["endDate"] in (None, ""),
    )
    return jsonify({"success": True, "poll": polls.poll_to_dict(poll)})


@app.route("/api/polls/<int:poll_id>", methods=["DELETE"])
@login_required
def api_delete_poll(poll_id):
    polls.delete_poll(poll_id, current_user_id())
    return jsonify({"success": True})


@app.route("/api/polls/<int:poll_id>/results")
def api_results(poll_id):
    polls.get_poll(poll_id)
    return jsonify({"success": True, "results": polls.poll_results(poll_id)})


@app.route("/api/polls/<int:poll_id>/vote", methods=["POST"])
def api_vote(poll_id):
    body = request.get_json(silent=True) or {}
    anon_id, new_anon = anonymous_id()
    total = cast_vote(poll_id, body.get("optionId"), anon_id)
    resp = jsonify({"success": True, "totalVotes": total})
    if new_anon:
        set_anonymous_cookie(resp, anon_id)
    return resp


@app.route("/api/polls/<int:poll_id>/share-link", methods=["POST"])
def api_share_link(poll_id):
    body = request.get_json(silent=True) or {}
    share = polls.create_share(poll_id, created_by=current_user_id(),
                               password=body.get("password") or None,
                               expires_at=body.get("expiresAt") or None)
    return jsonify({"success": True, "shareCode": share["share_code"],
                    "shareUrl": share_url_for(share["share_code"])})


@app.route("/api/polls/<int:poll_id>/qrcode")
def api_qrcode(poll_id):
    share = polls.create_share(poll_id, created_by=current_user_id())
    url = share_url_for(share["share_code"])
    return jsonify({"success": True, "qrCode": qr_data_url(url), "shareUrl": url})


@app.route("/api/polls/<int:poll_id>/export")
def api_export(poll_id):
    poll, options = polls.get_poll(poll_id)
    chart_type = request.args.get("chartType", "bar")
    fmt = request.args.get("format", "json").lower()
    if chart_type not in CHART_TYPES:
        raise ValidationError(f"Unknown chart type '{chart_type}'. Supported: {', '.join(CHART_TYPES)}")

    results = polls.poll_results(poll_id,
                                 filter_user_id=request.args.get("filterUserId") or None,
                                 filter_anonymous_user_id=request.args.get("filterAnonymousUserId") or None)
    payload = results_payload(poll, options, results)
    filename = f"poll_results_{poll_id}"

    if fmt == "json":
        return jsonify(payload)
    if fmt == "csv":
        return attachment(results_csv(payload["numericalSummary"]).encode("utf-8"),
                          "text/csv", f"{filename}.csv")
    if fmt in ("image", "png"):
        data = results_png(poll, payload["chartData"], payload["numericalSummary"],
                           chart_type=chart_type, realtime=payload["isRealtime"])
        return attachment(data, "image/png", f"{filename}.png")
    if fmt == "pdf":
        data = results_pdf(poll, payload["chartData"], payload["numericalSummary"],
                           chart_type=chart_type, realtime=payload["isRealtime"])
        return attachment(data, "application/pdf", f"{filename}.pdf")
    raise ValidationError(f"Invalid format '{fmt}'. Supported formats: json, csv, image, pdf")


@app.route("/api/polls/share/<code>")
def api_share_lookup(code):
    _, poll, _ = polls.get_share(code)
    return jsonify({"success": True, "pollId": poll["id"]})


@app.route("/api/polls/share-results/<code>")
def api_share_results(code):
    share, poll, options = polls.get_share(code)
    polls.check_share_access(share, request.args.get("password"))
    return jsonify(results_payload(poll, options, polls.poll_results(poll["id"])))


@socketio.on("connect")
def on_connect():
    logger.debug("Socket client connected")


if __name__ == "__main__":
    with app.app_context():
        init_db()
    port = int(os.environ.get('PORT', 5000))
    debug = not PRODUCTION
    socketio.run(app, debug=debug, host="0.0.0.0", port=port)
