"""
Project store backed by SQLAlchemy.

Reads and writes flat per-owner project records. Every call opens its
own session, so the store can be shared by concurrent sessions and
payment watchers.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import sessionmaker
from sqlalchemy.engine import Engine

from rankerbot.core.db import session_scope
from rankerbot.core.models import Base, Project, ProjectStatus, ProjectWallet, WalletRole

logger = logging.getLogger(__name__)

# Fields a patch may touch directly
_PATCHABLE = ("owner_username", "token_name", "status")


class ProjectOwnershipError(Exception):
    """Raised when an asset is already onboarded by a different owner."""


@dataclass(frozen=True)
class StoredWallet:
    """Encrypted wallet as persisted."""
    pubkey: str
    encrypted_secret: bytes
    salt: bytes


@dataclass
class ProjectRecord:
    """Detached snapshot of a project and its wallets."""
    owner_id: int
    token_mint: str
    token_name: Optional[str]
    status: ProjectStatus
    project_wallet: Optional[StoredWallet] = None
    worker_wallets: List[StoredWallet] = field(default_factory=list)
    volume_custom_settings: Dict[str, Any] = field(default_factory=dict)


def _to_record(project: Project) -> ProjectRecord:
    project_wallet = None
    workers = []
    for w in project.wallets:
        stored = StoredWallet(pubkey=w.pubkey, encrypted_secret=w.encrypted_secret, salt=w.salt)
        if w.role == WalletRole.PROJECT:
            project_wallet = stored
        else:
            workers.append(stored)

    return ProjectRecord(
        owner_id=project.owner_id,
        token_mint=project.token_mint,
        token_name=project.token_name,
        status=project.status,
        project_wallet=project_wallet,
        worker_wallets=workers,
        volume_custom_settings=dict(project.volume_custom_settings or {}),
    )


class SqlProjectStore:
    """
    Project store on top of a SQLAlchemy engine.

    Worker wallets are append-only; there is no removal operation.
    """

    def __init__(self, engine: Engine):
        Base.metadata.create_all(engine)
        self.Session = sessionmaker(bind=engine, expire_on_commit=False)

    def _find(self, session, token_mint: str) -> Optional[Project]:
        return session.query(Project).filter_by(token_mint=token_mint).first()

    def _owned(self, session, owner_id: int, token_mint: str) -> Project:
        project = self._find(session, token_mint)
        if project is None:
            raise LookupError(f"Project not found: {token_mint}")
        if project.owner_id != owner_id:
            raise ProjectOwnershipError(f"{token_mint} is onboarded by another user")
        return project

    def get(self, owner_id: int, token_mint: str) -> Optional[ProjectRecord]:
        """Get the owner's project for an asset, or None."""
        with session_scope(self.Session) as session:
            project = self._find(session, token_mint)
            if project is None or project.owner_id != owner_id:
                return None
            return _to_record(project)

    def owner_of(self, token_mint: str) -> Optional[int]:
        """Return the owner currently holding an asset, if any."""
        with session_scope(self.Session) as session:
            project = self._find(session, token_mint)
            return project.owner_id if project else None

    def list_projects(self, owner_id: int) -> List[ProjectRecord]:
        """List all projects of an owner, oldest first."""
        with session_scope(self.Session) as session:
            projects = (
                session.query(Project)
                .filter_by(owner_id=owner_id)
                .order_by(Project.created_at, Project.id)
                .all()
            )
            return [_to_record(p) for p in projects]

    def upsert(self, owner_id: int, token_mint: str, patch: Dict[str, Any]) -> ProjectRecord:
        """
        Create or update a project.

        Args:
            owner_id: Owning user id
            token_mint: Asset identity
            patch: Fields to set; volume_custom_settings is merged key by key

        Raises:
            ProjectOwnershipError: asset already onboarded by another owner
        """
        with session_scope(self.Session) as session:
            project = self._find(session, token_mint)

            if project is None:
                project = Project(owner_id=owner_id, token_mint=token_mint, volume_custom_settings={})
                session.add(project)
                logger.info(f"Onboarded project {token_mint} for owner {owner_id}")
            elif project.owner_id != owner_id:
                raise ProjectOwnershipError(f"{token_mint} is onboarded by another user")

            for key in _PATCHABLE:
                if key in patch:
                    setattr(project, key, patch[key])

            if "volume_custom_settings" in patch:
                merged = dict(project.volume_custom_settings or {})
                merged.update(patch["volume_custom_settings"])
                project.volume_custom_settings = merged

            session.flush()
            return _to_record(project)

    def save_custom_setting(self, owner_id: int, token_mint: str, setting: str, value: Any) -> ProjectRecord:
        """Save one custom volume setting."""
        return self.upsert(owner_id, token_mint, {"volume_custom_settings": {setting: value}})

    def set_project_wallet(self, owner_id: int, token_mint: str, wallet: StoredWallet) -> bool:
        """
        Attach the primary project wallet.

        Returns:
            True if stored, False if the project already has one
        """
        with session_scope(self.Session) as session:
            project = self._owned(session, owner_id, token_mint)
            if any(w.role == WalletRole.PROJECT for w in project.wallets):
                return False

            project.wallets.append(ProjectWallet(
                role=WalletRole.PROJECT,
                pubkey=wallet.pubkey,
                encrypted_secret=wallet.encrypted_secret,
                salt=wallet.salt,
                position=0,
            ))
            return True

    def add_worker_wallets(self, owner_id: int, token_mint: str, wallets: List[StoredWallet]) -> int:
        """
        Append worker wallets to a project.

        Returns:
            New total number of worker wallets
        """
        with session_scope(self.Session) as session:
            project = self._owned(session, owner_id, token_mint)
            workers = [w for w in project.wallets if w.role == WalletRole.WORKER]
            next_position = max((w.position for w in workers), default=0) + 1

            for offset, wallet in enumerate(wallets):
                project.wallets.append(ProjectWallet(
                    role=WalletRole.WORKER,
                    pubkey=wallet.pubkey,
                    encrypted_secret=wallet.encrypted_secret,
                    salt=wallet.salt,
                    position=next_position + offset,
                ))

            total = len(workers) + len(wallets)
            logger.info(f"Added {len(wallets)} worker wallets to {token_mint} (total {total})")
            return total
