"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

from sqlalchemy import Column, Integer, Text

from app.storage import Base, DELETED_MESSAGES_TABLE, MESSAGES_TABLE


class MessageRow(Base):
    """
    SQLAlchemy model for posted messages.

    Table: messages
    Primary Key: id (row-sequence value, exposed as server_id)

    AUTOINCREMENT keeps SQLite from handing out the id of a deleted
    newest row again.
    """
    __tablename__ = MESSAGES_TABLE
    __table_args__ = {"sqlite_autoincrement": True}

    id = Column(Integer, primary_key=True, autoincrement=True)
    text = Column(Text, nullable=False)


class DeletedMessageRow(Base):
    """
    SQLAlchemy model for the deletion log (tombstones).

    Table: deleted_messages
    Primary Key: seq (log position, in the order deletions happened)
    Unique: id (server_id of the removed message, logged at most once)
    """
    __tablename__ = DELETED_MESSAGES_TABLE
    __table_args__ = {"sqlite_autoincrement": True}

    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(Integer, nullable=False, unique=True)
