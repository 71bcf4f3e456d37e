#!/usr/bin/env python3
"""
Database models and configuration for hackreview.
Holds the application, team and reviewer records that the team lifecycle and
assignment services read and write.
"""

import json
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterable, Iterator, List, Set

from sqlalchemy import (create_engine, Boolean, Column, DateTime, ForeignKey,
                        Integer, String, Text)
from sqlalchemy.orm import declarative_base, relationship, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger('hackreview.database')

DEFAULT_DATABASE_URL = 'sqlite:///hackreview.db'

# reviewer_ref value of an application no reviewer has been chosen for
UNASSIGNED = 'Not processed'

STATUS_UNVERIFIED = 'Unverified'
STATUS_INCOMPLETE = 'Incomplete'
STATUS_SUBMITTED = 'Submitted'
STATUS_ADMITTED = 'Admitted'
STATUS_WAITLISTED = 'Waitlisted'
STATUS_CONFIRMED = 'Confirmed'
STATUS_DECLINED = 'Declined'
STATUS_CHECKED_IN = 'CheckedIn'
STATUS_REFUSED = 'Refused'

APPLICATION_STATUSES = (
    STATUS_UNVERIFIED,
    STATUS_INCOMPLETE,
    STATUS_SUBMITTED,
    STATUS_ADMITTED,
    STATUS_WAITLISTED,
    STATUS_CONFIRMED,
    STATUS_DECLINED,
    STATUS_CHECKED_IN,
    STATUS_REFUSED,
)

MAX_TEAM_SIZE = 4

Base = declarative_base()


def utcnow() -> datetime:
    """Default clock: timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class Application(Base):
    """An applicant's record. The core only writes ``team_ref``,
    ``reviewer_ref`` and ``assigned_at``."""
    __tablename__ = "applications"

    id = Column(String(64), primary_key=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    first_name = Column(String(255), default='')
    last_name = Column(String(255), default='')
    status = Column(String(32), default=STATUS_UNVERIFIED, nullable=False, index=True)
    team_ref = Column(String(64), nullable=True, index=True)
    reviewer_ref = Column(String(255), default=UNASSIGNED, nullable=False, index=True)
    assigned_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class Team(Base):
    """A team of one to four applicants.

    ``pk`` is a surrogate key that never changes; ``id`` is the public
    identifier and always equals the current owner's application id, so an
    ownership transfer rewrites ``id`` and ``owner_id`` on the same row.
    """
    __tablename__ = "teams"

    pk = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(64), unique=True, index=True, nullable=False)
    name = Column(String(255), unique=True, nullable=False)
    code = Column(String(16), unique=True, nullable=False)
    owner_id = Column(String(64), nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    members = relationship("TeamMember", back_populates="team",
                           cascade="all, delete-orphan",
                           order_by="TeamMember.position")

    @property
    def member_ids(self) -> List[str]:
        return [m.application_id for m in self.members]


class TeamMember(Base):
    """Membership row. ``application_id`` is unique across the table, which
    makes the store itself reject an applicant joining two teams."""
    __tablename__ = "team_members"

    id = Column(Integer, primary_key=True)
    team_pk = Column(Integer, ForeignKey("teams.pk", ondelete="CASCADE"),
                     nullable=False, index=True)
    application_id = Column(String(64), ForeignKey("applications.id"),
                            unique=True, nullable=False)
    position = Column(Integer, nullable=False, default=0)
    is_admitted = Column(Boolean, default=True)
    joined_at = Column(DateTime, default=utcnow)

    # Relationships
    team = relationship("Team", back_populates="members")


class Reviewer(Base):
    """Reviewer account and the set of applications assigned to it."""
    __tablename__ = "reviewers"

    id = Column(Integer, primary_key=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    first_name = Column(String(255), default='')
    last_name = Column(String(255), default='')
    is_super_admin = Column(Boolean, default=False)
    assigned_applications = Column(Text, default='[]')  # JSON array, kept as a set

    def assigned_set(self) -> Set[str]:
        """Return the assigned application ids as a set."""
        try:
            return set(json.loads(self.assigned_applications or '[]'))
        except (TypeError, ValueError):
            logger.warning("Reviewer %s has an unreadable assignment list", self.email)
            return set()

    def store_assigned(self, application_ids: Iterable[str]) -> None:
        """Persist *application_ids* as a sorted, duplicate-free JSON array."""
        self.assigned_applications = json.dumps(sorted(set(application_ids)))


def make_engine(url: str = DEFAULT_DATABASE_URL, echo: bool = False):
    """Create an engine for *url*.

    In-memory SQLite gets a ``StaticPool`` so every session opened by the
    services sees the same database.
    """
    if url.startswith('sqlite'):
        if url in ('sqlite://', 'sqlite:///:memory:'):
            return create_engine(url, echo=echo,
                                 connect_args={"check_same_thread": False},
                                 poolclass=StaticPool)
        return create_engine(url, echo=echo,
                             connect_args={"check_same_thread": False})
    return create_engine(url, echo=echo)


def make_session_factory(engine):
    """Return a ``sessionmaker`` bound to *engine*."""
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_db(engine) -> bool:
    """Initialize database tables."""
    try:
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables initialized successfully")
        return True
    except Exception as e:
        logger.error("Failed to initialize database: %s", e)
        return False


@contextmanager
def session_scope(session_factory) -> Iterator:
    """Open a session, commit on success, roll back on error, always close."""
    db = session_factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
