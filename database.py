# database.py
import enum
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    String,
    Text,
    Uuid,
    create_engine,
    event,
)
from sqlalchemy.orm import declarative_base, relationship, sessionmaker

from config import get_settings


def utcnow():
    # Naive UTC so values compare the same way on SQLite and Postgres.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def build_engine(url):
    """Create an engine; SQLite connections get FK enforcement and write-locking transactions."""
    if not url.startswith("sqlite"):
        return create_engine(url, pool_pre_ping=True)

    engine = create_engine(url, connect_args={"check_same_thread": False})

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # Let SQLAlchemy emit BEGIN itself instead of pysqlite.
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        # SQLite has no SELECT ... FOR UPDATE; IMMEDIATE takes the write lock up front.
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


engine = build_engine(get_settings().database_url)
SessionLocal = sessionmaker(
    autocommit=False, autoflush=False, expire_on_commit=False, bind=engine
)
Base = declarative_base()


class CategoryType(str, enum.Enum):
    MANDATORY = "mandatory"
    OPTIONAL = "optional"


class PriorityColor(str, enum.Enum):
    RED = "red"
    YELLOW = "yellow"
    GREEN = "green"


class NoteType(str, enum.Enum):
    AI = "ai"
    USER = "user"


def _enum_column(enum_cls):
    return Enum(
        enum_cls,
        native_enum=False,
        length=20,
        values_callable=lambda members: [m.value for m in members],
    )


class User(Base):
    __tablename__ = "users"
    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    email = Column(String(255), unique=True, index=True, nullable=False)
    password_hash = Column(String(255), nullable=False)
    name = Column(String(100), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    plans = relationship(
        "BudgetPlan", back_populates="user", cascade="all, delete-orphan", passive_deletes=True
    )


class BudgetPlan(Base):
    __tablename__ = "budget_plans"
    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    title = Column(String(200), nullable=False)
    budget_cents = Column(BigInteger, nullable=False)
    period_start = Column(Date, nullable=False)
    period_end = Column(Date, nullable=False)
    background_color = Column(String(7), nullable=False, default="#FDF7F7")
    is_ai_generated = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    user = relationship("User", back_populates="plans")
    categories = relationship(
        "ExpenseCategory",
        back_populates="plan",
        order_by="[ExpenseCategory.sort_order, ExpenseCategory.created_at]",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    notes = relationship(
        "Note",
        back_populates="plan",
        order_by="[Note.sort_order, Note.created_at]",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class ExpenseCategory(Base):
    __tablename__ = "expense_categories"
    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    plan_id = Column(
        Uuid, ForeignKey("budget_plans.id", ondelete="CASCADE"), index=True, nullable=False
    )
    title = Column(String(100), nullable=False)
    category_type = Column(_enum_column(CategoryType), nullable=False)
    sort_order = Column(BigInteger, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    plan = relationship("BudgetPlan", back_populates="categories")
    items = relationship(
        "ExpenseItem",
        back_populates="category",
        order_by="[ExpenseItem.sort_order, ExpenseItem.created_at]",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class ExpenseItem(Base):
    __tablename__ = "expense_items"
    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    category_id = Column(
        Uuid, ForeignKey("expense_categories.id", ondelete="CASCADE"), index=True, nullable=False
    )
    title = Column(String(200), nullable=False)
    amount_cents = Column(BigInteger, nullable=False)
    priority_color = Column(_enum_column(PriorityColor), nullable=False)
    is_completed = Column(Boolean, nullable=False, default=False)
    sort_order = Column(BigInteger, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    category = relationship("ExpenseCategory", back_populates="items")


class Note(Base):
    __tablename__ = "notes"
    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    plan_id = Column(
        Uuid, ForeignKey("budget_plans.id", ondelete="CASCADE"), index=True, nullable=False
    )
    content = Column(Text, nullable=False)
    note_type = Column(_enum_column(NoteType), nullable=False)
    sort_order = Column(BigInteger, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    plan = relationship("BudgetPlan", back_populates="notes")


class RefreshToken(Base):
    __tablename__ = "refresh_tokens"
    id = Column(Uuid, primary_key=True)
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    token_hash = Column(String(64), unique=True, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    revoked_at = Column(DateTime, nullable=True)
    replaced_by = Column(Uuid, nullable=True)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def transaction(db):
    """Commit everything done inside the block, or roll it all back."""
    try:
        yield db
        db.commit()
    except BaseException:
        db.rollback()
        raise
