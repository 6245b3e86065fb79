import pytest

from app import app as flask_app
from db import init_db

PASSWORD = "Secret123"


@pytest.fixture
def app(tmp_path):
    flask_app.config.update(TESTING=True, DATABASE=str(tmp_path / "poll.db"), BASE_URL="")
    with flask_app.app_context():
        init_db()
    yield flask_app


@pytest.fixture
def client(app):
    return app.test_client()


def signup(client, email="alice@example.com", name="Alice"):
    return client.post("/signup", data={
        "name": name,
        "email": email,
        "password": PASSWORD,
        "confirmPassword": PASSWORD,
    })


def create_poll(client, title="What is your favorite programming language?",
                options=("Python", "JavaScript", "Go"), **extra):
    data = {"title": title, "description": "Pick one", "isPublic": "true",
            "allowAnonymousVotes": "true"}
    data.update({f"option-{i}": opt for i, opt in enumerate(options, start=1)})
    data.update(extra)
    return client.post("/api/polls", data=data)


@pytest.fixture
def author(client):
    """A signed-in client."""
    signup(client)
    return client


@pytest.fixture
def poll_id(author):
    resp = create_poll(author)
    assert resp.status_code == 201
    return resp.get_json()["pollId"]
