import app as planner
from conftest import user_id


def add(client, text, month=0, week=1, day="الأحد", **extra):
    data = {"text": text, "month": str(month), "weekInMonth": str(week), "day": day}
    data.update(extra)
    return client.post("/add", data=data, headers={"Referer": f"/month/{month}/week/{week}"})


def tasks_of(flask_app, username):
    uid = user_id(flask_app, username)
    with flask_app.app_context():
        return planner.Task.query.filter_by(user_id=uid).order_by(planner.Task.id).all()


def test_add_task(app, alice):
    response = add(alice, "read", month=3, week=2)
    assert response.status_code == 302
    assert response.headers["Location"] == "/month/3/week/2"

    [task] = tasks_of(app, "alice")
    assert (task.text, task.month, task.week_in_month, task.day) == ("read", 3, 2, "الأحد")
    assert task.completed is False
    assert "read" in alice.get("/month/3/week/2").get_data(as_text=True)


def test_add_task_forces_owner(app, alice, bob):
    bob_id = user_id(app, "bob")
    add(alice, "mine", userId=str(bob_id), user_id=str(bob_id))

    assert [t.text for t in tasks_of(app, "alice")] == ["mine"]
    assert tasks_of(app, "bob") == []


def test_add_task_rejects_bad_numbers(app, alice):
    assert add(alice, "x", month=12).status_code == 400
    assert add(alice, "x", week=0).status_code == 400
    response = alice.post("/add", data={"text": "x", "month": "jan", "weekInMonth": "1"})
    assert response.status_code == 400
    assert tasks_of(app, "alice") == []


def test_toggle_twice_restores_flag(app, alice):
    add(alice, "run")
    [task] = tasks_of(app, "alice")

    response = alice.post(f"/toggle/{task.id}", headers={"Referer": "/month/0/week/1"})
    assert response.status_code == 302
    assert response.headers["Location"] == "/month/0/week/1"
    assert tasks_of(app, "alice")[0].completed is True

    alice.post(f"/toggle/{task.id}")
    assert tasks_of(app, "alice")[0].completed is False


def test_toggle_other_users_task_is_noop(app, alice, bob):
    add(alice, "private")
    [task] = tasks_of(app, "alice")

    response = bob.post(f"/toggle/{task.id}")
    assert response.status_code == 302
    assert tasks_of(app, "alice")[0].completed is False


def test_toggle_missing_task_is_noop(alice):
    assert alice.post("/toggle/9999").status_code == 302


def test_tasks_are_private(app, alice, bob):
    add(alice, "alice only", month=5, week=4)
    assert "alice only" not in bob.get("/month/5/week/4").get_data(as_text=True)

    bob_id = user_id(app, "bob")
    with app.app_context():
        bob_stats = planner.weeks_stats(bob_id, 5)
    assert all(week["progress"] == 0 for week in bob_stats)


def test_week_progress_per_month(app, alice):
    add(alice, "a", month=2, week=1)
    add(alice, "b", month=2, week=1)
    add(alice, "c", month=2, week=3)
    add(alice, "other month", month=3, week=1)
    first = tasks_of(app, "alice")[0]
    alice.post(f"/toggle/{first.id}")

    alice_id = user_id(app, "alice")
    with app.app_context():
        stats = planner.weeks_stats(alice_id, 2)
    assert stats == [
        {"id": 1, "progress": 50},
        {"id": 2, "progress": 0},
        {"id": 3, "progress": 0},
        {"id": 4, "progress": 0},
        {"id": 5, "progress": 0},
    ]
    assert "50%" in alice.get("/month/2").get_data(as_text=True)


def test_task_fields_from_form_ignores_unknown_fields():
    fields = planner.task_fields_from_form({
        "text": "t", "month": "1", "weekInMonth": "5", "completed": "on", "UserId": "7",
    })
    assert fields == {"text": "t", "month": 1, "week_in_month": 5, "completed": True}
