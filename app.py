import os
import logging
from dataclasses import dataclass
from dotenv import load_dotenv

import bleach
from datetime import datetime, timezone
from markdown import markdown
from urllib.parse import urlparse
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError

from flask import Flask, render_template, redirect, url_for, request, abort, session
from flask_sqlalchemy import SQLAlchemy
from flask_login import (
    LoginManager, UserMixin, login_user,
    logout_user, login_required, current_user
)
from flask_migrate import Migrate

from werkzeug.security import generate_password_hash, check_password_hash

import calendar_ui

# UTC の現在時刻を返す
def utcnow():
    return datetime.now(timezone.utc)

# サニタイジング
# メモは Markdown として表示する. <img> などは許可していない

ALLOWED_TAGS = bleach.sanitizer.ALLOWED_TAGS.union({
    "p","br","pre","code","blockquote",
    "ul","ol","li",
    "strong","em","del",
    "h1","h2","h3","h4",
    "table","thead","tbody","tr","th","td","a",
    "div", "span"
})
ALLOWED_ATTRS = {
    "a": ["href", "title", "rel"],
    "code": ["class"],
    "span": ["class"],
    "pre": ["class"],
    "div": ["class"]
}
ALLOWED_PROTOCOLS = ["http", "https", "mailto"]

MARKDOWN_EXTENSIONS = [
    "fenced_code",
    "tables",
    "sane_lists",
    "pymdownx.superfences",
    "pymdownx.tilde",
    "pymdownx.tasklist"
]

def sanitize_html(html: str) -> str:
    cleaned = bleach.clean(
        html,
        tags=list(ALLOWED_TAGS),
        attributes=ALLOWED_ATTRS,
        protocols=ALLOWED_PROTOCOLS,
        strip=True,
    )
    cleaned = bleach.linkify(cleaned)
    return cleaned

def render_note(text: str) -> str:
    if not text:
        return ""
    return sanitize_html(markdown(text, extensions=MARKDOWN_EXTENSIONS))

load_dotenv()

logging.basicConfig(
    level=os.getenv("PLANNER_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s - %(message)s",
)
logger = logging.getLogger("planner")

def database_url() -> str:
    """
    DATABASE_URL がなければローカルの SQLite ファイルを使う
    Heroku 形式の postgres:// は SQLAlchemy が受け付けないので置き換える
    """
    url = os.getenv("DATABASE_URL") or "sqlite:///planner.sqlite"
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    return url

app = Flask(__name__)
app.config["SECRET_KEY"] = os.getenv("SECRET_KEY")
app.config["SQLALCHEMY_DATABASE_URI"] = database_url()
app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False # 省エネ

db = SQLAlchemy(app)
# スキーマは `flask --app app db upgrade` で作る. SQLite の ALTER 用に batch モード
migrate = Migrate()
migrate.init_app(app, db, render_as_batch=True)
login_manager = LoginManager(app)
login_manager.login_view = "login" # ログインしていないときのリダイレクト先

class User(UserMixin, db.Model):
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    password_hash = db.Column(db.String(200), nullable=False)

    tasks = db.relationship("Task", backref="owner", lazy=True)
    notes = db.relationship("Note", backref="owner", lazy=True)

    def set_password(self, password: str):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        return check_password_hash(self.password_hash, password)

class Task(db.Model):
    # 一覧も集計も (user_id, month, week_in_month) 単位
    __table_args__ = (
        db.Index("ix_task_user_month_week", "user_id", "month", "week_in_month"),
    )

    id = db.Column(db.Integer, primary_key=True)
    text = db.Column(db.String(500))
    completed = db.Column(db.Boolean, nullable=False, default=False)
    day = db.Column(db.String(50)) # 表示用のラベル. 日付の計算には使わない
    week_in_month = db.Column(db.Integer) # 1..5
    month = db.Column(db.Integer) # 0..11

    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow
    )

    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False)

# month_id / week_id が該当しないときの値
NO_ID = -1
NOTE_CATEGORIES = ("main", "month", "week")
NOTE_KEY_COLUMNS = ["user_id", "category", "month_id", "week_id"]

class Note(db.Model):
    # 1 つのキーにつきメモは 1 件だけ
    __table_args__ = (
        db.UniqueConstraint(*NOTE_KEY_COLUMNS, name="uq_note_user_key"),
    )

    id = db.Column(db.Integer, primary_key=True)
    content = db.Column(db.Text, nullable=False, default="")
    category = db.Column(db.String(10), nullable=False)
    month_id = db.Column(db.Integer, nullable=False, default=NO_ID)
    week_id = db.Column(db.Integer, nullable=False, default=NO_ID)

    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow
    )

    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False)

def _optional_id(value):
    # 空文字と -1 は「指定なし」
    if value is None or str(value).strip() == "":
        return None
    value = int(value)
    return None if value == NO_ID else value

@dataclass(frozen=True)
class NoteKey:
    """
    メモの置き場所. main / month(m) / week(m, w) のどれか
    該当しない id は NO_ID で埋める
    """
    category: str
    month_id: int = NO_ID
    week_id: int = NO_ID

    @classmethod
    def main(cls) -> "NoteKey":
        return cls("main")

    @classmethod
    def month(cls, month_id: int) -> "NoteKey":
        return cls("month", month_id)

    @classmethod
    def week(cls, month_id: int, week_id: int) -> "NoteKey":
        return cls("week", month_id, week_id)

    @classmethod
    def from_form(cls, category, month_id=None, week_id=None) -> "NoteKey":
        """
        フォームの値からキーを作る. 不正な値なら ValueError
        main は id を無視, month は monthId, week は両方が必要
        """
        month_id = _optional_id(month_id)
        week_id = _optional_id(week_id)

        if category == "main":
            return cls.main()
        if category == "month":
            if month_id is None or not calendar_ui.is_valid_month(month_id):
                raise ValueError(f"invalid month for note: {month_id!r}")
            return cls.month(month_id)
        if category == "week":
            if month_id is None or not calendar_ui.is_valid_month(month_id):
                raise ValueError(f"invalid month for note: {month_id!r}")
            if week_id is None or not calendar_ui.is_valid_week(week_id):
                raise ValueError(f"invalid week for note: {week_id!r}")
            return cls.week(month_id, week_id)
        raise ValueError(f"unknown note category: {category!r}")

    def columns(self) -> dict:
        return {
            "category": self.category,
            "month_id": self.month_id,
            "week_id": self.week_id,
        }

def find_note(user_id: int, key: NoteKey):
    return Note.query.filter_by(user_id=user_id, **key.columns()).first()

def note_content(user_id: int, key: NoteKey) -> str:
    note = find_note(user_id, key)
    return note.content if note else ""

# ON CONFLICT で upsert する. 対応するのは SQLite と PostgreSQL のみ
_UPSERT_INSERTS = {
    "sqlite": sqlite.insert,
    "postgresql": postgresql.insert,
}

def upsert_note(user_id: int, key: NoteKey, content: str):
    """
    キーごとに 1 件のメモを作るか上書きする. 後勝ち
    既存のメモの category / month_id / week_id は変えない
    """
    now = utcnow()
    values = dict(key.columns(), user_id=user_id, content=content, created_at=now, updated_at=now)

    insert = _UPSERT_INSERTS[db.engine.dialect.name]
    stmt = insert(Note.__table__).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=NOTE_KEY_COLUMNS,
        set_={"content": stmt.excluded.content, "updated_at": stmt.excluded.updated_at},
    )
    db.session.execute(stmt)
    db.session.commit()

def task_scope(user_id: int, month_index: int, week_id: int):
    return Task.query.filter_by(user_id=user_id, month=month_index, week_in_month=week_id)

def weeks_stats(user_id: int, month_index: int) -> list[dict]:
    stats = []
    for week_id in range(1, calendar_ui.WEEKS_PER_MONTH + 1):
        tasks = task_scope(user_id, month_index, week_id)
        total = tasks.count()
        done = tasks.filter_by(completed=True).count()
        stats.append({"id": week_id, "progress": calendar_ui.week_progress(total, done)})
    return stats

# フォーム名 -> カラム名. これ以外の項目 (user_id など) は無視する
TASK_FORM_FIELDS = {
    "text": "text",
    "day": "day",
    "weekInMonth": "week_in_month",
    "month": "month",
    "completed": "completed",
}

def task_fields_from_form(form) -> dict:
    """
    フォームから Task のカラムを取り出す. 数値が不正なら ValueError
    """
    fields = {}
    for form_name, column in TASK_FORM_FIELDS.items():
        if form_name not in form:
            continue
        value = form[form_name]
        if column == "month":
            value = int(value)
            if not calendar_ui.is_valid_month(value):
                raise ValueError(f"invalid month: {value}")
        elif column == "week_in_month":
            value = int(value)
            if not calendar_ui.is_valid_week(value):
                raise ValueError(f"invalid week: {value}")
        elif column == "completed":
            value = value.lower() in ("1", "true", "on", "yes")
        fields[column] = value
    return fields

def redirect_back():
    # 直前のページへ. Referer がなければトップ
    return redirect(request.referrer or url_for("index"))

def safe_next(target):
    # 自サイト内のパスだけ許可
    if not target or not target.startswith("/"):
        return None
    parsed = urlparse(target)
    if parsed.scheme or parsed.netloc:
        return None
    return target

@login_manager.user_loader
def load_user(user_id):
    return db.session.get(User, int(user_id))

@app.errorhandler(SQLAlchemyError)
def handle_db_error(error):
    db.session.rollback()
    logger.error("database error on %s %s", request.method, request.path, exc_info=error)
    return "Internal Server Error", 500

# 月の一覧

@app.route("/")
@login_required
def index():
    note = note_content(current_user.id, NoteKey.main())
    return render_template(
        "months.html",
        month_names=calendar_ui.MONTH_NAMES,
        note=note,
        note_html=render_note(note),
    )

# 週の一覧

@app.route("/month/<int:m_id>")
@login_required
def month_view(m_id: int):
    if not calendar_ui.is_valid_month(m_id):
        abort(404)

    note = note_content(current_user.id, NoteKey.month(m_id))
    return render_template(
        "weeks.html",
        m_id=m_id,
        m_name=calendar_ui.MONTH_NAMES[m_id],
        weeks_stats=weeks_stats(current_user.id, m_id),
        note=note,
        note_html=render_note(note),
    )

# 週のタスク

@app.route("/month/<int:m_id>/week/<int:w_id>")
@login_required
def week_view(m_id: int, w_id: int):
    if not calendar_ui.is_valid_month(m_id) or not calendar_ui.is_valid_week(w_id):
        abort(404)

    # 並び順は DB まかせ
    tasks = task_scope(current_user.id, m_id, w_id).all()
    note = note_content(current_user.id, NoteKey.week(m_id, w_id))

    return render_template(
        "tasks.html",
        m_id=m_id,
        w_id=w_id,
        m_name=calendar_ui.MONTH_NAMES[m_id],
        days=calendar_ui.week_days(m_id, w_id),
        tasks=tasks,
        note=note,
        note_html=render_note(note),
    )

# ログイン

@app.route("/login", methods=["GET", "POST"])
def login():
    error = None
    if request.method == "POST":
        username = request.form.get("username", "")
        password = request.form.get("password", "")

        user = User.query.filter_by(username=username).first()
        if user and user.check_password(password):
            login_user(user)
            logger.info("user %s logged in", user.id)
            return redirect(safe_next(request.args.get("next")) or url_for("index"))
        logger.info("failed login for username %r", username)
        error = "بيانات غلط"
    return render_template("login.html", error=error)

# 登録

@app.route("/register", methods=["GET", "POST"])
def register():
    error = None
    if request.method == "POST":
        username = request.form.get("username", "")
        password = request.form.get("password", "")

        if not username or not password:
            error = "الاسم وكلمة المرور مطلوبان"
        else:
            user = User(username=username)
            user.set_password(password)
            db.session.add(user)
            try:
                db.session.commit()
            except SQLAlchemyError as e:
                # ユーザ名の重複など, 作成に失敗したら行は残さずフォームに戻す
                db.session.rollback()
                logger.info("registration rejected for username %r: %s", username, type(e).__name__)
                error = "الاسم موجود فعلاً"
            else:
                login_user(user)
                logger.info("registered user %s", user.id)
                return redirect(url_for("index"))
    return render_template("register.html", error=error)

@app.route("/logout")
def logout():
    # 未ログインでも OK
    if current_user.is_authenticated:
        logger.info("user %s logged out", current_user.id)
    logout_user()
    session.clear()
    return redirect(url_for("login"))

# メモの保存

@app.route("/save-note", methods=["POST"])
@login_required
def save_note():
    try:
        key = NoteKey.from_form(
            request.form.get("category"),
            request.form.get("monthId"),
            request.form.get("weekId"),
        )
    except ValueError:
        abort(400)

    upsert_note(current_user.id, key, request.form.get("content", ""))
    return redirect_back()

# タスク

@app.route("/add", methods=["POST"])
@login_required
def add_task():
    try:
        fields = task_fields_from_form(request.form)
    except ValueError:
        abort(400)

    # 持ち主は常にログイン中のユーザ
    fields["user_id"] = current_user.id
    db.session.add(Task(**fields))
    db.session.commit()
    return redirect_back()

@app.route("/toggle/<int:task_id>", methods=["POST"])
@login_required
def toggle_task(task_id: int):
    # 他人のタスクは見つからない扱い
    task = Task.query.filter_by(id=task_id, user_id=current_user.id).first()
    if task:
        task.completed = not task.completed
        db.session.commit()
    return redirect_back()


if __name__ == "__main__":
    # テーブルは事前に `flask --app app db upgrade` で作っておくこと
    app.run(port=int(os.getenv("PORT", "3000")), debug=os.getenv("FLASK_DEBUG") == "1")
