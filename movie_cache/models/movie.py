from sqlalchemy import Column, Index, Integer, String, Float, DateTime, Text, text
from sqlalchemy.dialects import postgresql
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base
from sqlalchemy.schema import CreateIndex, CreateTable

Base = declarative_base()

class MovieDB(Base):
    """
    ORM Model - Mapping 1-1 with table 'movies' in Postgres
    """
    __tablename__ = 'movies'

    external_id = Column(String(32), primary_key=True)  # IMDb id, e.g. tt0133093
    title = Column(String(500), nullable=False)
    release_year = Column(Integer)
    runtime_minutes = Column(Integer)
    genres = Column(JSONB, nullable=False, server_default=text("'[]'::jsonb"))  # ["Action", "Sci-Fi"]
    director = Column(String(500))
    writers = Column(JSONB, nullable=False, server_default=text("'[]'::jsonb"))
    cast_members = Column(JSONB, nullable=False, server_default=text("'[]'::jsonb"))
    plot = Column(Text)
    languages = Column(JSONB, nullable=False, server_default=text("'[]'::jsonb"))
    countries = Column(JSONB, nullable=False, server_default=text("'[]'::jsonb"))
    rating_sources = Column(JSONB, nullable=False, server_default=text("'[]'::jsonb"))  # [{"source", "value"}]
    aggregate_rating = Column(Float)
    media_type = Column(String(16), nullable=False, server_default="movie")
    rated = Column(String(32))
    poster_url = Column(String(1000))

    last_fetched_at = Column(DateTime(timezone=True))
    expires_at = Column(DateTime(timezone=True))
    last_accessed_at = Column(DateTime(timezone=True))
    search_count = Column(Integer, nullable=False, server_default="0")
    popularity_score = Column(Integer, nullable=False, server_default="0")
    created_at = Column(DateTime(timezone=True), server_default=text("NOW()"))
    updated_at = Column(DateTime(timezone=True), server_default=text("NOW()"))

    __table_args__ = (
        Index("ix_movies_genres", genres, postgresql_using="gin"),
        # trigram indexes serve the ILIKE substring search
        Index("ix_movies_title_trgm", title, postgresql_using="gin", postgresql_ops={"title": "gin_trgm_ops"}),
        Index("ix_movies_plot_trgm", plot, postgresql_using="gin", postgresql_ops={"plot": "gin_trgm_ops"}),
        Index("ix_movies_release_year", release_year),
        Index("ix_movies_aggregate_rating", aggregate_rating),
        Index("ix_movies_popularity_score", popularity_score),
        Index("ix_movies_media_type", media_type),
        Index("ix_movies_expires_at", expires_at),
    )


def schema_statements() -> list:
    """DDL for the movies table and its indexes, idempotent."""
    dialect = postgresql.dialect()
    table = MovieDB.__table__
    statements = [
        "CREATE EXTENSION IF NOT EXISTS pg_trgm",
        str(CreateTable(table, if_not_exists=True).compile(dialect=dialect)),
    ]
    for index in sorted(table.indexes, key=lambda idx: idx.name):
        statements.append(str(CreateIndex(index, if_not_exists=True).compile(dialect=dialect)))
    return statements
