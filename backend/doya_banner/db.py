import json
import uuid
from datetime import datetime
from pathlib import Path
from typing import Optional, Dict, Any, Iterable

from sqlalchemy import create_engine, Column, String, DateTime, Text, Integer, desc, Index, UniqueConstraint, update
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool

from doya_banner.config import DATABASE_URL, DATA_DIR, SERVICE_ID

# Support external database via DATABASE_URL (e.g., Postgres). Fallback to SQLite.
if DATABASE_URL in ("sqlite://", "sqlite:///:memory:"):
    # In-memory database shared across threads (tests)
    engine = create_engine(
        DATABASE_URL,
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
elif DATABASE_URL:
    engine = create_engine(DATABASE_URL, future=True, pool_pre_ping=True)
else:
    data_dir = Path(DATA_DIR)
    data_dir.mkdir(parents=True, exist_ok=True)
    engine = create_engine(f"sqlite:///{(data_dir / 'banner.db').as_posix()}", future=True)
SessionLocal = sessionmaker(bind=engine, expire_on_commit=False, autoflush=False)
Base = declarative_base()


class UserServiceSubscription(Base):
    __tablename__ = "user_service_subscriptions"
    __table_args__ = (UniqueConstraint("user_id", "service_id", name="uq_user_service"),)

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False)
    service_id = Column(String, nullable=False)
    plan = Column(String, nullable=False, default="FREE")
    monthly_usage = Column(Integer, nullable=False, default=0)
    last_usage_reset = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class Generation(Base):
    __tablename__ = "generations"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False)
    service_id = Column(String, nullable=False)
    input_json = Column(Text, nullable=True)
    output = Column(Text, nullable=True)
    output_type = Column(String, nullable=False, default="IMAGE")
    metadata_json = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)


# Lightweight index for per-user history listing
Index('ix_generations_user_created', Generation.user_id, Generation.created_at)

Base.metadata.create_all(engine)


def _now() -> datetime:
    return datetime.utcnow()


def _subscription_dict(s: UserServiceSubscription) -> Dict[str, Any]:
    return {
        "id": s.id,
        "user_id": s.user_id,
        "service_id": s.service_id,
        "plan": s.plan,
        "monthly_usage": int(s.monthly_usage or 0),
        "last_usage_reset": s.last_usage_reset,
        "created_at": s.created_at,
        "updated_at": s.updated_at,
    }


def get_service_subscription(user_id: str, service_id: str = SERVICE_ID) -> Optional[Dict[str, Any]]:
    with SessionLocal() as session:
        s = (
            session.query(UserServiceSubscription)
            .filter(UserServiceSubscription.user_id == user_id, UserServiceSubscription.service_id == service_id)
            .first()
        )
        return _subscription_dict(s) if s else None


def upsert_service_subscription(user_id: str, *, plan: str = "FREE", service_id: str = SERVICE_ID) -> Dict[str, Any]:
    with SessionLocal() as session:
        s = (
            session.query(UserServiceSubscription)
            .filter(UserServiceSubscription.user_id == user_id, UserServiceSubscription.service_id == service_id)
            .first()
        )
        if s is None:
            s = UserServiceSubscription(
                id=str(uuid.uuid4()),
                user_id=user_id,
                service_id=service_id,
                plan=plan,
                monthly_usage=0,
                last_usage_reset=_now(),
                created_at=_now(),
                updated_at=_now(),
            )
            session.add(s)
        else:
            s.plan = plan
            s.updated_at = _now()
        session.commit()
        return _subscription_dict(s)


def reset_monthly_usage(user_id: str, service_id: str = SERVICE_ID) -> bool:
    with SessionLocal() as session:
        res = session.execute(
            update(UserServiceSubscription)
            .where(UserServiceSubscription.user_id == user_id, UserServiceSubscription.service_id == service_id)
            .values(monthly_usage=0, last_usage_reset=_now(), updated_at=_now())
        )
        session.commit()
        return bool(res.rowcount)


def increment_monthly_usage(user_id: str, n: int, service_id: str = SERVICE_ID) -> int:
    """Add ``n`` to the user's monthly counter and return the new value.

    The addition happens in SQL so concurrent increments are not lost. A
    missing subscription row is created on the fly.
    """
    n = max(0, int(n))
    with SessionLocal() as session:
        res = session.execute(
            update(UserServiceSubscription)
            .where(UserServiceSubscription.user_id == user_id, UserServiceSubscription.service_id == service_id)
            .values(monthly_usage=UserServiceSubscription.monthly_usage + n, updated_at=_now())
        )
        if not res.rowcount:
            session.add(
                UserServiceSubscription(
                    id=str(uuid.uuid4()),
                    user_id=user_id,
                    service_id=service_id,
                    plan="FREE",
                    monthly_usage=n,
                    last_usage_reset=_now(),
                    created_at=_now(),
                    updated_at=_now(),
                )
            )
        session.commit()
        s = (
            session.query(UserServiceSubscription)
            .filter(UserServiceSubscription.user_id == user_id, UserServiceSubscription.service_id == service_id)
            .first()
        )
        return int(s.monthly_usage or 0) if s else n


def create_generations(user_id: str, rows: Iterable[Dict[str, Any]], service_id: str = SERVICE_ID) -> list[str]:
    """Insert history rows; each row has ``input``, ``output``, ``metadata`` and optional ``output_type``."""
    ids: list[str] = []
    with SessionLocal() as session:
        for row in rows:
            gid = str(uuid.uuid4())
            session.add(
                Generation(
                    id=gid,
                    user_id=user_id,
                    service_id=service_id,
                    input_json=json.dumps(row.get("input") or {}, ensure_ascii=False),
                    output=row.get("output"),
                    output_type=row.get("output_type") or "IMAGE",
                    metadata_json=json.dumps(row.get("metadata") or {}, ensure_ascii=False),
                    created_at=_now(),
                )
            )
            ids.append(gid)
        session.commit()
    return ids


def list_generations(
    user_id: str,
    limit: int | None = None,
    service_id: str = SERVICE_ID,
    *,
    since: datetime | None = None,
    output_type: str | None = None,
) -> list[Dict[str, Any]]:
    """Newest first. ``since`` is a naive UTC datetime like the stored timestamps."""
    with SessionLocal() as session:
        q = session.query(Generation).filter(Generation.user_id == user_id, Generation.service_id == service_id)
        if since is not None:
            q = q.filter(Generation.created_at >= since)
        if output_type:
            q = q.filter(Generation.output_type == output_type)
        q = q.order_by(desc(Generation.created_at), desc(Generation.id))
        if isinstance(limit, int) and limit > 0:
            q = q.limit(limit)
        out: list[Dict[str, Any]] = []
        for g in q.all():
            out.append({
                "id": g.id,
                "input": json.loads(g.input_json or "{}"),
                "output": g.output,
                "output_type": g.output_type,
                "metadata": json.loads(g.metadata_json or "{}"),
                "created_at": g.created_at.isoformat() if g.created_at else None,
            })
        return out
