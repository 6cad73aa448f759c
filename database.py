"""
SQLite/SQLAlchemy persistence for taste profiles, trip intents, blueprints
and their locations, plus the generic record store the pipeline talks to.
"""
from sqlalchemy import create_engine, inspect, Column, String, Integer, Float, DateTime, Text, ForeignKey, JSON, Boolean
from sqlalchemy.orm import declarative_base, sessionmaker, relationship
from sqlalchemy.pool import StaticPool
from datetime import datetime
import asyncio
import logging
import os
import threading
import uuid

logger = logging.getLogger(__name__)

Base = declarative_base()

DEFAULT_DATABASE_URL = "sqlite:///./trip_planner.db"


def generate_id():
    return str(uuid.uuid4())


class TasteProfile(Base):
    __tablename__ = "taste_profiles"

    id = Column(String, primary_key=True, default=generate_id)
    user_id = Column(String, unique=True, index=True, nullable=False)
    anchors = Column(JSON, default=dict)  # cultural / restaurants / bucket_list / anti_pattern
    dimensions = Column(JSON, default=dict)  # formality, density, temporality, sociality, legibility
    pace = Column(String, default="varied")  # slow_deep, varied, high_coverage
    meal_philosophy = Column(String, default="mixed")
    sleep_pattern = Column(String, default="flexible")
    discovery_mode = Column(String, default="wander")  # wander, researched, local_led
    hard_constraints = Column(JSON, default=list)
    soft_preferences = Column(JSON, default=list)
    selected_image_moods = Column(JSON, default=list)
    image_selections = Column(JSON, default=list)
    onboarding_completed = Column(Boolean, default=False)
    taste_summary = Column(Text, default="")
    raw_answers = Column(JSON, default=list)  # audit trail of what the profile came from
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class TripIntent(Base):
    __tablename__ = "trip_intents"

    id = Column(String, primary_key=True, default=generate_id)
    owner_id = Column(String, index=True, nullable=False)
    destination = Column(String)
    travelers = Column(JSON, default=list)
    scope_options = Column(JSON, default=list)  # 0-3 ScopeOption dicts, generated once
    selected_scope_id = Column(String, nullable=True)
    hard_constraints = Column(JSON, default=list)
    soft_preferences = Column(JSON, default=list)
    status = Column(String, default="scoping")  # scoping, building, built
    blueprint_id = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Blueprint(Base):
    __tablename__ = "blueprints"

    id = Column(String, primary_key=True, default=generate_id)
    owner_id = Column(String, index=True, nullable=False)
    story_intent = Column(String, default="discovery")  # travel, discovery, research, memory, ...
    title = Column(String, default="")
    bounding_context = Column(JSON, default=dict)
    meta = Column("metadata", JSON, default=dict)  # display properties (tags, artifact_type, ...)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    locations = relationship("Location", back_populates="blueprint", cascade="all, delete-orphan")
    connections = relationship("Connection", back_populates="blueprint", cascade="all, delete-orphan")


class Location(Base):
    __tablename__ = "locations"

    id = Column(String, primary_key=True, default=generate_id)
    blueprint_id = Column(String, ForeignKey("blueprints.id"), index=True)
    name = Column(String)
    lat = Column(Float, nullable=True)  # null = geocoding failed, kept for manual fix
    lng = Column(Float, nullable=True)
    category = Column(JSON, default=list)
    notes = Column(Text, default="")
    source_type = Column(String, default="self")  # self, ai, friend, influencer, editorial, dataset
    source_id = Column(String, nullable=True)
    source_name = Column(String, nullable=True)
    source_url = Column(String, nullable=True)
    confidence = Column(Float, nullable=True)
    enrichment = Column(JSON, default=dict)  # day, time_of_day, duration, fit, artifact, ...
    position = Column(Integer, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)

    blueprint = relationship("Blueprint", back_populates="locations")


class Connection(Base):
    __tablename__ = "connections"

    id = Column(String, primary_key=True, default=generate_id)
    blueprint_id = Column(String, ForeignKey("blueprints.id"), index=True)
    connection_type = Column(String, default="flight")
    status = Column(String, default="suggested")  # suggested, searching, available, unavailable
    provider = Column(String, nullable=True)
    provider_ref_id = Column(String, nullable=True)
    data = Column(JSON, default=dict)
    deep_link_url = Column(String)
    created_at = Column(DateTime, default=datetime.utcnow)

    blueprint = relationship("Blueprint", back_populates="connections")


class CacheEntry(Base):
    __tablename__ = "cache_entries"

    key = Column(String, primary_key=True)
    value = Column(JSON, nullable=True)
    expires_at = Column(DateTime, nullable=True)


TABLES = {
    model.__tablename__: model
    for model in (TasteProfile, TripIntent, Blueprint, Location, Connection, CacheEntry)
}


def _columns(model) -> dict:
    """Map SQL column name -> mapped attribute name (they differ for blueprints.metadata)."""
    return {attr.columns[0].name: attr.key for attr in inspect(model).column_attrs}


def _row_to_dict(model, row) -> dict:
    return {name: getattr(row, key) for name, key in _columns(model).items()}


class RecordStore:
    """Generic table-keyed store: insert / upsert / update / select / delete.

    Each call opens its own session and runs it in a worker thread, so the
    event loop is never blocked on SQLite.  Calls are serialized with a lock;
    an in-memory SQLite database is a single shared connection.
    """

    def __init__(self, engine):
        self.engine = engine
        self._Session = sessionmaker(bind=engine, expire_on_commit=False)
        self._lock = threading.Lock()

    # -- plumbing ------------------------------------------------------------

    def _model(self, table: str):
        try:
            return TABLES[table]
        except KeyError:
            raise KeyError(f"Unknown table: {table}") from None

    def _run_sync(self, fn, *args):
        with self._lock:
            db = self._Session()
            try:
                return fn(db, *args)
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()

    async def _run(self, fn, *args):
        return await asyncio.to_thread(self._run_sync, fn, *args)

    @staticmethod
    def _kwargs(model, fields: dict) -> dict:
        cols = _columns(model)
        unknown = set(fields) - set(cols)
        if unknown:
            raise KeyError(f"Unknown column(s) for {model.__tablename__}: {sorted(unknown)}")
        return {cols[name]: value for name, value in fields.items()}

    @staticmethod
    def _query(db, model, filters: dict):
        cols = _columns(model)
        q = db.query(model)
        for name, value in (filters or {}).items():
            attr = getattr(model, cols[name])
            q = q.filter(attr.is_(None) if value is None else attr == value)
        return q

    # -- record-store contract ----------------------------------------------

    async def insert(self, table: str, fields: dict) -> dict:
        model = self._model(table)

        def _insert(db):
            row = model(**self._kwargs(model, fields))
            db.add(row)
            db.commit()
            db.refresh(row)
            return _row_to_dict(model, row)

        return await self._run(_insert)

    async def insert_many(self, table: str, rows: list[dict]) -> list[dict]:
        """Insert a batch in one commit: either every row lands or none do."""
        model = self._model(table)

        def _insert_many(db):
            objs = [model(**self._kwargs(model, fields)) for fields in rows]
            db.add_all(objs)
            db.commit()
            for obj in objs:
                db.refresh(obj)
            return [_row_to_dict(model, obj) for obj in objs]

        if not rows:
            return []
        return await self._run(_insert_many)

    async def upsert(self, table: str, fields: dict, conflict_key: str) -> dict:
        model = self._model(table)

        def _upsert(db):
            row = self._query(db, model, {conflict_key: fields[conflict_key]}).first()
            if row is None:
                row = model(**self._kwargs(model, fields))
                db.add(row)
            else:
                for key, value in self._kwargs(model, fields).items():
                    setattr(row, key, value)
            db.commit()
            db.refresh(row)
            return _row_to_dict(model, row)

        return await self._run(_upsert)

    async def update(self, table: str, id: str, fields: dict):
        model = self._model(table)

        def _update(db):
            row = self._query(db, model, {"id": id}).first()
            if row is None:
                return None
            for key, value in self._kwargs(model, fields).items():
                setattr(row, key, value)
            db.commit()
            db.refresh(row)
            return _row_to_dict(model, row)

        return await self._run(_update)

    async def select_one(self, table: str, filters: dict):
        model = self._model(table)

        def _select_one(db):
            row = self._query(db, model, filters).first()
            return _row_to_dict(model, row) if row is not None else None

        return await self._run(_select_one)

    async def select_many(self, table: str, filters: dict = None, order=None) -> list[dict]:
        """``order`` is a column name or list of names; prefix with '-' for descending."""
        model = self._model(table)
        cols = _columns(model)
        if isinstance(order, str):
            order = [order]

        def _select_many(db):
            q = self._query(db, model, filters or {})
            for name in order or []:
                desc = name.startswith("-")
                attr = getattr(model, cols[name.lstrip("-")])
                q = q.order_by(attr.desc() if desc else attr.asc())
            return [_row_to_dict(model, row) for row in q.all()]

        return await self._run(_select_many)

    async def delete(self, table: str, filters: dict) -> int:
        model = self._model(table)

        def _delete(db):
            rows = self._query(db, model, filters).all()
            for row in rows:
                db.delete(row)
            db.commit()
            return len(rows)

        return await self._run(_delete)


def init_db(url: str = None):
    """Create the engine and all tables.  ``sqlite://`` gives a shared in-memory DB."""
    url = url or os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL)
    kwargs = {}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    engine = create_engine(url, **kwargs)
    Base.metadata.create_all(bind=engine)
    logger.info("Database ready at %s", engine.url.render_as_string(hide_password=True))
    return engine


def get_store(url: str = None) -> RecordStore:
    return RecordStore(init_db(url))
