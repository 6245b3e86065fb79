import datetime

import pytest

import polls
from auth import register_user
from conftest import PASSWORD


@pytest.fixture
def ctx(app):
    with app.app_context():
        yield


@pytest.fixture
def user_id(ctx):
    return register_user("Alice", "alice@example.com", PASSWORD, PASSWORD)


def test_validate_poll_input_cleans_and_rejects():
    assert polls.validate_poll_input("  Q?  ", [" a ", "", "b", None]) == ("Q?", ["a", "b"])

    with pytest.raises(polls.ValidationError, match="unique"):
        polls.validate_poll_input("Q?", ["Yes", "yes"])
    with pytest.raises(polls.ValidationError, match="At most 6"):
        polls.validate_poll_input("Q?", [str(i) for i in range(7)])
    with pytest.raises(polls.ValidationError, match="less than 100"):
        polls.validate_poll_input("Q?", ["x" * 101, "y"])
    with pytest.raises(polls.ValidationError, match="Title is required"):
        polls.validate_poll_input("   ", ["a", "b"])
    with pytest.raises(polls.ValidationError, match="at most 200"):
        polls.validate_poll_input("x" * 201, ["a", "b"])


def test_option_id_must_be_integral():
    assert polls.parse_option_id(3) == 3
    assert polls.parse_option_id(" 12 ") == 12
    for value in (True, False, 1.9, 2.0, "1.5", "", None, [1]):
        with pytest.raises(polls.ValidationError, match="Invalid option"):
            polls.parse_option_id(value)


def test_create_poll_needs_user(ctx):
    with pytest.raises(polls.AuthenticationRequired):
        polls.create_poll(None, "Q?", None, ["a", "b"])


def test_results_include_zero_vote_options_in_order(user_id):
    poll_id = polls.create_poll(user_id, "Q?", None, ["c", "a", "b"])
    _, options = polls.get_poll(poll_id)
    polls.vote_on_poll(poll_id, options[2]["id"], anonymous_user_id="anon-1")
    polls.vote_on_poll(poll_id, options[2]["id"], anonymous_user_id="anon-2")
    polls.vote_on_poll(poll_id, options[0]["id"], user_id=user_id)

    results = polls.poll_results(poll_id)
    assert [(r["option_text"], r["vote_count"]) for r in results] == [("c", 1), ("a", 0), ("b", 2)]

    only_user = polls.poll_results(poll_id, filter_user_id=user_id)
    assert [r["vote_count"] for r in only_user] == [1, 0, 0]


def test_user_and_anonymous_votes_are_independent(user_id):
    poll_id = polls.create_poll(user_id, "Q?", None, ["a", "b"])
    _, options = polls.get_poll(poll_id)
    assert polls.vote_on_poll(poll_id, options[0]["id"], user_id=user_id) == 1
    assert polls.vote_on_poll(poll_id, options[1]["id"], anonymous_user_id="anon") == 2
    assert polls.has_voted(poll_id, user_id=user_id) == options[0]["id"]
    assert polls.has_voted(poll_id, anonymous_user_id="anon") == options[1]["id"]
    assert polls.has_voted(poll_id, anonymous_user_id="other") is None

    with pytest.raises(polls.AlreadyVoted):
        polls.vote_on_poll(poll_id, options[1]["id"], user_id=user_id, anonymous_user_id="fresh")


def test_anonymous_vote_requires_id(user_id):
    poll_id = polls.create_poll(user_id, "Q?", None, ["a", "b"])
    _, options = polls.get_poll(poll_id)
    with pytest.raises(polls.ValidationError):
        polls.vote_on_poll(poll_id, options[0]["id"])


def test_summarize_percentages():
    results = [
        {"option_id": 1, "option_text": "a", "vote_count": 1},
        {"option_id": 2, "option_text": "b", "vote_count": 2},
    ]
    chart_data, summary, total = polls.summarize(results)
    assert total == 3
    assert chart_data == [{"name": "a", "value": 1}, {"name": "b", "value": 2}]
    assert [row["percentage"] for row in summary] == [33.33, 66.67]

    _, empty, total = polls.summarize([{"option_id": 1, "option_text": "a", "vote_count": 0}])
    assert total == 0
    assert empty[0]["percentage"] == 0.0


def test_is_realtime():
    now = datetime.datetime(2024, 6, 1, tzinfo=datetime.timezone.utc)
    assert polls.is_realtime({"end_date": None}, now)
    assert polls.is_realtime({"end_date": "2024-06-02T00:00:00+00:00"}, now)
    assert not polls.is_realtime({"end_date": "2024-05-31T00:00:00"}, now)


def test_update_poll_owner_only_and_clears_end_date(user_id):
    poll_id = polls.create_poll(user_id, "Q?", None, ["a", "b"], end_date="2030-01-01")
    other = register_user("Bob", "bob@example.com", PASSWORD, PASSWORD)

    with pytest.raises(polls.PermissionDenied):
        polls.update_poll(poll_id, other, title="Hijacked")

    poll = polls.update_poll(poll_id, user_id, description="  more detail ", clear_end_date=True)
    assert poll["description"] == "more detail"
    assert poll["end_date"] is None

    with pytest.raises(polls.ValidationError, match="Title is required"):
        polls.update_poll(poll_id, user_id, title="  ")
    with pytest.raises(polls.ValidationError, match="Title must be a string"):
        polls.update_poll(poll_id, user_id, title=42)
    with pytest.raises(polls.ValidationError, match="is_public"):
        polls.update_poll(poll_id, user_id, is_public="false")
    assert polls.get_poll(poll_id)[0]["is_public"] == 1


def test_delete_poll_cascades(user_id):
    poll_id = polls.create_poll(user_id, "Q?", None, ["a", "b"])
    _, options = polls.get_poll(poll_id)
    polls.vote_on_poll(poll_id, options[0]["id"], user_id=user_id)
    polls.create_share(poll_id, created_by=user_id)

    polls.delete_poll(poll_id, user_id)
    with pytest.raises(polls.PollNotFound):
        polls.get_poll(poll_id)
    from db import get_db
    assert get_db().execute("SELECT COUNT(*) FROM votes").fetchone()[0] == 0
    assert get_db().execute("SELECT COUNT(*) FROM poll_shares").fetchone()[0] == 0


def test_share_password_is_hashed(user_id):
    poll_id = polls.create_poll(user_id, "Q?", None, ["a", "b"])
    share = polls.create_share(poll_id, password="hunter2")
    assert share["password_hash"] != "hunter2"
    assert set(share["share_code"]) <= set(polls.SHARE_CODE_ALPHABET)

    polls.check_share_access(share, "hunter2")
    with pytest.raises(polls.IncorrectPassword):
        polls.check_share_access(share, "nope")


def test_share_for_missing_poll(ctx):
    with pytest.raises(polls.PollNotFound):
        polls.create_share(12345)
    with pytest.raises(polls.PollNotFound):
        polls.get_share("missing")
