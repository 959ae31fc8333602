from calendar_ui import MONTH_NAMES


def test_home_lists_months(alice):
    html = alice.get("/").get_data(as_text=True)
    for name in MONTH_NAMES:
        assert name in html


def test_month_view(alice):
    response = alice.get("/month/1")
    assert response.status_code == 200
    html = response.get_data(as_text=True)
    assert MONTH_NAMES[1] in html
    assert "/month/1/week/5" in html


def test_week_view_shows_dates(alice):
    html = alice.get("/month/0/week/1").get_data(as_text=True)
    for d in range(1, 8):
        assert f"{d}/1" in html


def test_week_view_rolls_over_month_end(alice):
    html = alice.get("/month/1/week/5").get_data(as_text=True)
    assert "1/3" in html
    assert "7/3" in html


def test_out_of_range_ids_are_not_found(alice):
    assert alice.get("/month/12").status_code == 404
    assert alice.get("/month/0/week/6").status_code == 404
    assert alice.get("/month/0/week/0").status_code == 404
    assert alice.get("/month/-1").status_code == 404
