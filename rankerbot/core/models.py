"""
Database models for RankerBot.

Models: Project, ProjectWallet.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    JSON,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Integer,
    LargeBinary,
    String,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class ProjectStatus(str, Enum):
    """Lifecycle status of a project."""
    ONBOARDED = "onboarded"
    ACTIVE = "active"
    PAUSED = "paused"


class WalletRole(str, Enum):
    """Role of a wallet within its project."""
    PROJECT = "project"
    WORKER = "worker"


class Project(Base):
    """
    One onboarded token for one owner.

    token_mint is unique: an asset is onboarded by at most one owner.
    """

    __tablename__ = "projects"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_id: Mapped[int] = mapped_column(Integer, index=True, nullable=False)
    owner_username: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    token_mint: Mapped[str] = mapped_column(String(50), unique=True, index=True, nullable=False)
    token_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    status: Mapped[ProjectStatus] = mapped_column(
        SQLEnum(ProjectStatus), default=ProjectStatus.ONBOARDED
    )
    volume_custom_settings: Mapped[dict] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    # Relationship
    wallets: Mapped[list["ProjectWallet"]] = relationship(
        "ProjectWallet",
        back_populates="project",
        cascade="all, delete-orphan",
        order_by="ProjectWallet.position",
    )

    def __repr__(self) -> str:
        return f"<Project {self.id}: {self.token_mint} owner={self.owner_id}>"


class ProjectWallet(Base):
    """
    A wallet owned by exactly one project.

    Immutable once created; worker wallets are only ever appended.
    """

    __tablename__ = "project_wallets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    project_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("projects.id"), nullable=False
    )
    role: Mapped[WalletRole] = mapped_column(SQLEnum(WalletRole), nullable=False)
    pubkey: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)

    # Encrypted key storage
    encrypted_secret: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    salt: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)

    position: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    # Relationship
    project: Mapped["Project"] = relationship("Project", back_populates="wallets")

    def __repr__(self) -> str:
        return f"<ProjectWallet {self.id}: {self.role.value} {self.pubkey}>"
