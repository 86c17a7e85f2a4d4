from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from .base import Base


class Artist(Base):
    __tablename__ = "artists"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    track_links: Mapped[list["TrackArtistLink"]] = relationship(back_populates="artist")


class Release(Base):
    __tablename__ = "releases"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    tracks: Mapped[list["Track"]] = relationship(back_populates="release")


class Track(Base):
    __tablename__ = "tracks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    release_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("releases.id", ondelete="SET NULL"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    release: Mapped[Release | None] = relationship(back_populates="tracks", lazy="selectin")
    artist_links: Mapped[list["TrackArtistLink"]] = relationship(
        back_populates="track",
        cascade="all, delete-orphan",
        order_by="TrackArtistLink.id",
        lazy="selectin",
    )
    features: Mapped["TrackFeatures | None"] = relationship(
        back_populates="track", uselist=False, cascade="all, delete-orphan"
    )


class TrackArtistLink(Base):
    __tablename__ = "track_artist_links"
    __table_args__ = (UniqueConstraint("track_id", "artist_id", "type"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    track_id: Mapped[int] = mapped_column(Integer, ForeignKey("tracks.id", ondelete="CASCADE"), nullable=False)
    artist_id: Mapped[int] = mapped_column(Integer, ForeignKey("artists.id", ondelete="CASCADE"), nullable=False)
    # free form ("artist", "release_artist", "composer", "producer", ...)
    type: Mapped[str] = mapped_column(String(32), nullable=False, default="artist")

    track: Mapped[Track] = relationship(back_populates="artist_links")
    artist: Mapped[Artist] = relationship(back_populates="track_links")


class TrackFeatures(Base):
    __tablename__ = "track_features"

    track_id: Mapped[int] = mapped_column(Integer, ForeignKey("tracks.id", ondelete="CASCADE"), primary_key=True)
    # feature name -> list of values, as produced by the audio analyzer
    data: Mapped[dict] = mapped_column(JSONB, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    track: Mapped[Track] = relationship(back_populates="features")
