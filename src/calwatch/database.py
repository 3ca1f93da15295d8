"""Database models and operations for channel and sync state persistence."""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import create_engine, Column, String, DateTime, ForeignKey, Index
from sqlalchemy.orm import declarative_base, sessionmaker, Session, relationship
import pytz

from .config import Settings
from .models import Channel, SyncState

Base = declarative_base()


def _to_utc_naive(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo; store everything as naive UTC."""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(pytz.UTC).replace(tzinfo=None)
    return value


class ChannelDB(Base):
    """Database model for registered push channels."""

    __tablename__ = 'channels'

    id = Column(String(255), primary_key=True)
    resource_id = Column(String(255), nullable=False)
    token = Column(String(255), nullable=False)
    callback_address = Column(String(1000), nullable=False)
    collection = Column(String(500), nullable=False)
    resource_uri = Column(String(1000), nullable=True)
    expiration = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=lambda: _to_utc_naive(datetime.now(pytz.UTC)))

    sync_state = relationship(
        "SyncStateDB",
        back_populates="channel",
        uselist=False,
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index('idx_channel_collection', 'collection'),
        Index('idx_channel_expiration', 'expiration'),
    )

    def to_model(self) -> Channel:
        return Channel(
            id=self.id,
            resource_id=self.resource_id,
            token=self.token,
            callback_address=self.callback_address,
            collection=self.collection,
            resource_uri=self.resource_uri,
            expiration=self.expiration,
            created_at=self.created_at,
        )


class SyncStateDB(Base):
    """Database model for the incremental sync cursor of a channel."""

    __tablename__ = 'sync_states'

    channel_id = Column(String(255), ForeignKey('channels.id'), primary_key=True)
    sync_token = Column(String(1000), nullable=True)  # Google nextSyncToken
    updated_at = Column(DateTime, nullable=False, default=lambda: _to_utc_naive(datetime.now(pytz.UTC)))

    channel = relationship("ChannelDB", back_populates="sync_state")

    def to_model(self) -> SyncState:
        return SyncState(
            channel_id=self.channel_id,
            sync_token=self.sync_token,
            updated_at=self.updated_at.replace(tzinfo=pytz.UTC),
        )


class DatabaseManager:
    """Database manager for channel state."""

    def __init__(self, settings: Settings):
        """Initialize database manager.

        Args:
            settings: Application settings
        """
        self.settings = settings
        self.engine = create_engine(
            settings.database_url,
            echo=settings.debug,
            pool_pre_ping=True
        )
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def init_db(self) -> None:
        """Initialize database tables."""
        Base.metadata.create_all(bind=self.engine)

    def get_session(self) -> Session:
        """Get database session."""
        return self.SessionLocal()

    def get_channels(self, session: Session) -> List[ChannelDB]:
        """Get all stored channels, oldest first."""
        return session.query(ChannelDB).order_by(ChannelDB.created_at).all()

    def get_channel(self, session: Session, channel_id: str) -> Optional[ChannelDB]:
        return session.get(ChannelDB, channel_id)

    def save_channel(self, session: Session, channel: Channel) -> ChannelDB:
        """Insert or update a channel row.

        Args:
            session: Database session
            channel: Channel to store

        Returns:
            Stored row
        """
        row = session.get(ChannelDB, channel.id)
        if row is None:
            row = ChannelDB(id=channel.id)
            session.add(row)
        row.resource_id = channel.resource_id
        row.token = channel.token
        row.callback_address = channel.callback_address
        row.collection = channel.collection
        row.resource_uri = channel.resource_uri
        row.expiration = _to_utc_naive(channel.expiration)
        row.created_at = _to_utc_naive(channel.created_at)
        session.commit()
        return row

    def delete_channel(self, session: Session, channel_id: str) -> bool:
        """Delete a channel and its sync state.

        Returns:
            True if a row was deleted
        """
        row = session.get(ChannelDB, channel_id)
        if row is None:
            return False
        session.delete(row)
        session.commit()
        return True

    def get_sync_states(self, session: Session) -> List[SyncStateDB]:
        return session.query(SyncStateDB).all()

    def save_sync_state(self, session: Session, state: SyncState) -> SyncStateDB:
        """Insert or update the sync state of a channel."""
        row = session.get(SyncStateDB, state.channel_id)
        if row is None:
            row = SyncStateDB(channel_id=state.channel_id)
            session.add(row)
        row.sync_token = state.sync_token
        row.updated_at = _to_utc_naive(state.updated_at)
        session.commit()
        return row
