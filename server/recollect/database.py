"""
Database module for users, folders, photos and blog notes.

Binary content (photo bytes, blog fields) is only ever stored as an
envelope; the CRUD helpers seal on write and hand envelopes back to the
caller on read. Uses SQLite by default - can be swapped for PostgreSQL
via DATABASE_URL.
"""

import uuid
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    LargeBinary,
    String,
    UniqueConstraint,
    create_engine,
)
from sqlalchemy.orm import Session, declarative_base, relationship, sessionmaker

from recollect import config
from recollect.candidates import PhotoRecord
from recollect.envelope import BLOG_LAYERS, EnvelopeLayer, EnvelopeStack, UnwrapResult

FOLDER_SECTIONS = ("memory", "documents", "other")
SHARE_PERMISSIONS = ("view", "edit")


def _connect_args(url: str) -> dict:
    return {"check_same_thread": False} if url.startswith("sqlite") else {}


engine = create_engine(config.DATABASE_URL, connect_args=_connect_args(config.DATABASE_URL))
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def _new_id() -> str:
    return uuid.uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    """
    Account that owns or shares folders.

    Login, sessions and OTP live outside this service; only identity is kept.
    """
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=_new_id)
    name = Column(String, nullable=False)
    email = Column(String, nullable=False, unique=True, index=True)
    created_at = Column(DateTime, default=_utcnow)


class Folder(Base):
    __tablename__ = "folders"
    __table_args__ = (UniqueConstraint("owner_id", "name", name="uq_folder_owner_name"),)

    id = Column(String, primary_key=True, default=_new_id)
    name = Column(String, nullable=False)
    section = Column(String, nullable=False)  # memory | documents | other
    owner_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    owner = relationship("User")
    photos = relationship(
        "Photo", back_populates="folder", cascade="all, delete-orphan", order_by="Photo.uploaded_at"
    )
    shares = relationship("FolderShare", back_populates="folder", cascade="all, delete-orphan")
    blogs = relationship("Blog", back_populates="folder", cascade="all, delete-orphan")


class FolderShare(Base):
    __tablename__ = "folder_shares"
    __table_args__ = (UniqueConstraint("folder_id", "user_id", name="uq_share_folder_user"),)

    id = Column(String, primary_key=True, default=_new_id)
    folder_id = Column(String, ForeignKey("folders.id"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    permission = Column(String, nullable=False, default="view")  # view | edit

    folder = relationship("Folder", back_populates="shares")
    user = relationship("User")


class Photo(Base):
    """
    A stored photo.

    PRIVACY DESIGN:
    - `data` holds the client-sealed upload wrapped again in a server envelope
    - is_encrypted=False marks legacy rows that carry the client layer only
    """
    __tablename__ = "photos"

    id = Column(String, primary_key=True, default=_new_id)
    folder_id = Column(String, ForeignKey("folders.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    content_type = Column(String, nullable=False)
    data = Column(LargeBinary, nullable=False)
    is_encrypted = Column(Boolean, default=False)
    uploaded_at = Column(DateTime, default=_utcnow)

    folder = relationship("Folder", back_populates="photos")

    def to_record(self) -> PhotoRecord:
        return PhotoRecord(
            photo_id=self.id,
            name=self.name,
            data=self.data,
            is_encrypted=bool(self.is_encrypted),
            content_type=self.content_type,
            metadata={"content_type": self.content_type, "uploaded_at": self.uploaded_at},
        )


class Blog(Base):
    """Text note in a folder; title and content are server-layer envelopes."""
    __tablename__ = "blogs"

    id = Column(String, primary_key=True, default=_new_id)
    folder_id = Column(String, ForeignKey("folders.id"), nullable=False, index=True)
    title = Column(LargeBinary, nullable=False)
    content = Column(LargeBinary, nullable=False)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    folder = relationship("Folder", back_populates="blogs")

    def open(self, stack: EnvelopeStack) -> Tuple[str, str]:
        """Decrypt title and content (raises on a bad envelope)."""
        title = stack.unwrap(self.title, BLOG_LAYERS).raise_for_failure()
        content = stack.unwrap(self.content, BLOG_LAYERS).raise_for_failure()
        return title.decode("utf-8"), content.decode("utf-8")


def init_db(bind=None):
    """Initialize database tables."""
    Base.metadata.create_all(bind=bind or engine)


def get_db() -> Session:
    """Get database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# ============================================================================
# Users
# ============================================================================

def create_user(db: Session, name: str, email: str) -> User:
    user = User(name=name, email=email.strip().lower())
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def get_user_by_id(db: Session, user_id: str) -> Optional[User]:
    return db.query(User).filter(User.id == user_id).first()


def get_user_by_email(db: Session, email: str) -> Optional[User]:
    return db.query(User).filter(User.email == email.strip().lower()).first()


# ============================================================================
# Folders
# ============================================================================

def create_folder(db: Session, owner_id: str, name: str, section: str) -> Folder:
    folder = Folder(owner_id=owner_id, name=name, section=section)
    db.add(folder)
    db.commit()
    db.refresh(folder)
    return folder


def get_folder(db: Session, folder_id: str) -> Optional[Folder]:
    return db.query(Folder).filter(Folder.id == folder_id).first()


def get_folder_by_name(db: Session, owner_id: str, name: str) -> Optional[Folder]:
    return db.query(Folder).filter(Folder.owner_id == owner_id, Folder.name == name).first()


def get_folders_by_owner(db: Session, owner_id: str) -> List[Folder]:
    return db.query(Folder).filter(Folder.owner_id == owner_id).order_by(Folder.created_at).all()


def get_shared_folders(db: Session, user_id: str) -> List[Folder]:
    """Folders other users have shared with this user."""
    return (
        db.query(Folder)
        .join(FolderShare, FolderShare.folder_id == Folder.id)
        .filter(FolderShare.user_id == user_id)
        .order_by(Folder.created_at)
        .all()
    )


def delete_folder(db: Session, folder_id: str) -> bool:
    """Delete a folder with its photos, notes and shares."""
    folder = get_folder(db, folder_id)
    if folder:
        db.delete(folder)
        db.commit()
        return True
    return False


def get_access(folder: Folder, user_id: str) -> Optional[str]:
    """
    Return "owner", "edit", "view", or None when the user has no access.
    """
    if folder.owner_id == user_id:
        return "owner"
    for share in folder.shares:
        if share.user_id == user_id:
            return share.permission
    return None


def share_folder(db: Session, folder: Folder, user: User, permission: str = "view") -> Optional[FolderShare]:
    """
    Grant a user access to a folder.

    Returns None if the folder is already shared with that user.
    """
    if any(share.user_id == user.id for share in folder.shares):
        return None

    share = FolderShare(folder_id=folder.id, user_id=user.id, permission=permission)
    db.add(share)
    db.commit()
    db.refresh(share)
    return share


# ============================================================================
# Photos
# ============================================================================

def add_photo(
    db: Session,
    folder: Folder,
    name: str,
    content_type: str,
    client_sealed: bytes,
    stack: EnvelopeStack
) -> Photo:
    """
    Store an upload under the server layer.

    The upload is expected to already carry the client layer; it is sealed
    once more here and never written in any other form.
    """
    photo = Photo(
        folder_id=folder.id,
        name=name,
        content_type=content_type,
        data=stack.seal(client_sealed, [EnvelopeLayer.SERVER]),
        is_encrypted=True,
    )
    db.add(photo)
    return photo


def open_server_layer(photo: Photo, stack: EnvelopeStack) -> UnwrapResult:
    """Remove the server layer only; legacy rows pass through unchanged."""
    if not photo.is_encrypted:
        return UnwrapResult(data=photo.data, outcomes=[])
    return stack.unwrap(photo.data, [EnvelopeLayer.SERVER])


# ============================================================================
# Blogs
# ============================================================================

def create_blog(db: Session, folder_id: str, title: str, content: str, stack: EnvelopeStack) -> Blog:
    blog = Blog(
        folder_id=folder_id,
        title=stack.seal(title.encode("utf-8"), BLOG_LAYERS),
        content=stack.seal(content.encode("utf-8"), BLOG_LAYERS),
    )
    db.add(blog)
    db.commit()
    db.refresh(blog)
    return blog


def get_blogs_by_folder(db: Session, folder_id: str) -> List[Blog]:
    """Newest first."""
    return (
        db.query(Blog)
        .filter(Blog.folder_id == folder_id)
        .order_by(Blog.created_at.desc())
        .all()
    )
