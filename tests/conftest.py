import os

# app の import 前にインメモリ DB を指定する
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SECRET_KEY"] = "test-secret"

import pytest

import app as planner


def register(client, username, password="secret"):
    return client.post("/register", data={"username": username, "password": password})


def user_id(flask_app, username):
    with flask_app.app_context():
        return planner.User.query.filter_by(username=username).one().id


@pytest.fixture
def app():
    # flask-login は g にユーザを持つので, リクエストをまたいで app context を保持しない
    flask_app = planner.app
    flask_app.config.update(TESTING=True)
    with flask_app.app_context():
        planner.db.create_all()
    yield flask_app
    with flask_app.app_context():
        planner.db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def alice(app):
    c = app.test_client()
    register(c, "alice")
    return c


@pytest.fixture
def bob(app):
    c = app.test_client()
    register(c, "bob")
    return c
