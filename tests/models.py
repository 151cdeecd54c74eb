"""Mapped models used throughout the test-suite."""

from __future__ import annotations

from typing import List, Optional

from sqlalchemy import Column, ForeignKey, String, Table, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from nested_model_updater.mixins import NestedUpdatable


class Base(DeclarativeBase):
    pass


author_post = Table(
    "author_post",
    Base.metadata,
    Column("author_id", ForeignKey("authors.id"), primary_key=True),
    Column("post_id", ForeignKey("posts.id"), primary_key=True),
)


class Genre(Base):
    __tablename__ = "genres"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(50))

    posts: Mapped[List["Post"]] = relationship(back_populates="genre")


class Post(NestedUpdatable, Base):
    __tablename__ = "posts"
    __fillable__ = ("title", "body")

    id: Mapped[int] = mapped_column(primary_key=True)
    genre_id: Mapped[Optional[int]] = mapped_column(ForeignKey("genres.id"))
    title: Mapped[Optional[str]] = mapped_column(String(50))
    body: Mapped[Optional[str]] = mapped_column(Text)

    genre: Mapped[Optional[Genre]] = relationship(back_populates="posts")
    comments: Mapped[List["Comment"]] = relationship(back_populates="post")
    comment_has_one: Mapped[Optional["Comment"]] = relationship(
        uselist=False, overlaps="comments,post"
    )
    authors: Mapped[List["Author"]] = relationship(
        secondary=author_post, back_populates="posts"
    )
    specials: Mapped[List["Special"]] = relationship(back_populates="post")


class Author(Base):
    __tablename__ = "authors"
    __fillable__ = ("name",)

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[Optional[str]] = mapped_column(String(50))
    gender: Mapped[str] = mapped_column(String(1), default="m")

    posts: Mapped[List[Post]] = relationship(secondary=author_post, back_populates="authors")
    comments: Mapped[List["Comment"]] = relationship(back_populates="author")


class Comment(Base):
    __tablename__ = "comments"
    __fillable__ = ("title", "body")

    id: Mapped[int] = mapped_column(primary_key=True)
    post_id: Mapped[Optional[int]] = mapped_column(ForeignKey("posts.id"))
    author_id: Mapped[Optional[int]] = mapped_column(ForeignKey("authors.id"))
    title: Mapped[Optional[str]] = mapped_column(String(50))
    body: Mapped[Optional[str]] = mapped_column(Text)

    post: Mapped[Optional[Post]] = relationship(back_populates="comments")
    author: Mapped[Optional[Author]] = relationship(back_populates="comments")
    tags: Mapped[List["Tag"]] = relationship(back_populates="comment")


class Tag(Base):
    __tablename__ = "tags"

    id: Mapped[int] = mapped_column(primary_key=True)
    comment_id: Mapped[Optional[int]] = mapped_column(ForeignKey("comments.id"))
    name: Mapped[Optional[str]] = mapped_column(String(50))

    comment: Mapped[Optional[Comment]] = relationship(back_populates="tags")


class Special(Base):
    __tablename__ = "specials"

    special: Mapped[str] = mapped_column(String(20), primary_key=True)
    post_id: Mapped[Optional[int]] = mapped_column(ForeignKey("posts.id"))
    name: Mapped[Optional[str]] = mapped_column(String(50))

    post: Mapped[Optional[Post]] = relationship(back_populates="specials")
