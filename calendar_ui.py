import math
from datetime import date, timedelta

# 予定表は 2026 年固定
YEAR = 2026
WEEKS_PER_MONTH = 5
DAYS_PER_WEEK = 7

MONTH_NAMES = [
    "يناير", "فبراير", "مارس", "أبريل", "مايو", "يونيو",
    "يوليو", "أغسطس", "سبتمبر", "أكتوبر", "نوفمبر", "ديسمبر",
]

# 日曜始まり
DAY_NAMES = ["الأحد", "الاثنين", "الثلاثاء", "الأربعاء", "الخميس", "الجمعة", "السبت"]


def is_valid_month(month_index: int) -> bool:
    return 0 <= month_index < len(MONTH_NAMES)


def is_valid_week(week_id: int) -> bool:
    return 1 <= week_id <= WEEKS_PER_MONTH


def week_start(month_index: int, week_id: int) -> date:
    """
    週は月の 1 日から数えた 7 日ずつのブロック (1, 8, 15, 22, 29 日始まり)
    実際の曜日とは無関係
    """
    return date(YEAR, month_index + 1, 1) + timedelta(days=(week_id - 1) * DAYS_PER_WEEK)


def week_days(month_index: int, week_id: int) -> list[tuple[str, str]]:
    """
    (曜日名, "日/月") を 7 つ返す
    月末を超えた分は翌月に繰り越す. 2 月の第 5 週は 3 月 1 日から始まる
    """
    start = week_start(month_index, week_id)
    days = []
    for index, name in enumerate(DAY_NAMES):
        d = start + timedelta(days=index)
        days.append((name, f"{d.day}/{d.month}"))
    return days


def week_progress(total: int, done: int) -> int:
    # ブラウザの Math.round と同じく .5 は切り上げ
    if total <= 0:
        return 0
    return math.floor(done * 100 / total + 0.5)
