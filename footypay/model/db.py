from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    CheckConstraint,
    Column,
    Float,
    Index,
    Integer,
    String,
)


Base = declarative_base()


# ----------------------------
# ORM models
# ----------------------------
class Organiser(Base):
    __tablename__ = "organisers"
    email = Column(String, primary_key=True)  # lower-cased
    account_id = Column(String, nullable=True)  # processor connected account
    created_at = Column(Float, nullable=False)


class Game(Base):
    __tablename__ = "games"
    id = Column(String, primary_key=True)
    title = Column(String, nullable=False)
    date = Column(String, nullable=True)
    location = Column(String, nullable=True)
    price = Column(Float, nullable=False)  # major units
    currency = Column(String, nullable=False, default="gbp")
    capacity = Column(Integer, nullable=False)
    organiser_email = Column(String, nullable=False, index=True)
    # routing target, snapshotted at creation
    organiser_account_id = Column(String, nullable=False)
    created_at = Column(Float, nullable=False)

    __table_args__ = (
        CheckConstraint("price > 0", name="ck_games_price_positive"),
        CheckConstraint("capacity > 0", name="ck_games_capacity_positive"),
    )


class RosterEntry(Base):
    __tablename__ = "roster_entries"
    game_id = Column(String, primary_key=True)
    # checkout session id: the idempotency key
    session_id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    spots = Column(Integer, nullable=False, default=1)
    customer_email = Column(String, nullable=True)
    joined_at = Column(Float, nullable=False)
    paid_at = Column(Float, nullable=False)

    __table_args__ = (
        CheckConstraint("spots >= 1", name="ck_roster_spots_positive"),
        Index("ix_roster_game_joined", "game_id", "joined_at"),
    )
