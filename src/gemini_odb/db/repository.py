"""Repository pattern for data access layer."""

from __future__ import annotations

from typing import TYPE_CHECKING, Generic, TypeVar

from sqlalchemy import func, select

from gemini_odb.constants import ExistenceState
from gemini_odb.errors import (
    GroupNotFoundError,
    NotFoundError,
    ObservationNotFoundError,
    ProgramNotFoundError,
    TargetNotFoundError,
)
from gemini_odb.models.orm import Base, Group, Observation, Program, Target

if TYPE_CHECKING:
    from typing import Any

    from sqlalchemy.orm import Session

__all__ = [
    "BaseRepository",
    "GroupRepository",
    "ObservationRepository",
    "ProgramRepository",
    "TargetRepository",
]

T = TypeVar("T", bound=Base)


class BaseRepository(Generic[T]):
    """
    Base repository providing CRUD operations.

    Parameters
    ----------
    session : Session
        Database session
    model_class : type[T]
        ORM model class

    Examples
    --------
    >>> repo = BaseRepository(session, Program)
    >>> program = repo.get("p-100")
    """

    not_found: type[NotFoundError] = NotFoundError

    def __init__(self, session: Session, model_class: type[T]) -> None:
        self.session = session
        self.model_class = model_class

    def get(self, id_value: Any) -> T | None:
        """
        Get entity by primary key.

        Parameters
        ----------
        id_value : Any
            Primary key value

        Returns
        -------
        T | None
            Entity instance or None if not found
        """
        return self.session.get(self.model_class, id_value)

    def require(self, id_value: Any) -> T:
        """Get entity by primary key or raise the repository's not-found error."""
        obj = self.get(id_value)
        if obj is None:
            raise self.not_found(id_value)
        return obj

    def create(self, obj: T) -> T:
        """Add and flush a new entity."""
        self.session.add(obj)
        self.session.flush()
        return obj

    def delete(self, obj: T) -> None:
        """Delete and flush an entity."""
        self.session.delete(obj)
        self.session.flush()


class ProgramRepository(BaseRepository[Program]):
    not_found = ProgramNotFoundError

    def __init__(self, session: Session) -> None:
        super().__init__(session, Program)

    def list_ids(self) -> list[str]:
        return list(
            self.session.execute(
                select(Program.program_id).order_by(Program.program_id)
            ).scalars()
        )


class GroupRepository(BaseRepository[Group]):
    """Group queries used by the tree engine."""

    not_found = GroupNotFoundError

    def __init__(self, session: Session) -> None:
        super().__init__(session, Group)

    def require_in_program(self, group_id: str, program_id: str) -> Group:
        """
        Get a group that must belong to ``program_id``.

        Raises
        ------
        GroupNotFoundError
            If the group is missing or belongs to another program
        """
        group = self.get(group_id)
        if group is None or group.program_id != program_id:
            raise GroupNotFoundError(group_id)
        return group

    def count_children(self, group_id: str) -> int:
        """Number of child groups plus present observations."""
        n_groups = self.session.scalar(
            select(func.count()).select_from(Group).where(Group.parent_id == group_id)
        )
        n_obs = self.session.scalar(
            select(func.count())
            .select_from(Observation)
            .where(
                Observation.group_id == group_id,
                Observation.existence == ExistenceState.PRESENT.value,
            )
        )
        return (n_groups or 0) + (n_obs or 0)


class ObservationRepository(BaseRepository[Observation]):
    not_found = ObservationNotFoundError

    def __init__(self, session: Session) -> None:
        super().__init__(session, Observation)


class TargetRepository(BaseRepository[Target]):
    not_found = TargetNotFoundError

    def __init__(self, session: Session) -> None:
        super().__init__(session, Target)
