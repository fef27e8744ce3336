"""Family and child directory backed by a :class:`~ribbit.store.RibbitStore`."""

from __future__ import annotations

from typing import Tuple
from uuid import uuid4

from .exceptions import NotFoundError, PermissionDeniedError, ValidationError
from .ledger import RewardLedger
from .models import Actor, ChildProfile, Family
from .ops import StructuredLogger
from .security import hash_pin, verify_pin
from .store import RibbitStore


class FamilyDirectory:
    """Resolve families, parents and children for the task and ledger workflows."""

    def __init__(self, store: RibbitStore, *, logger: StructuredLogger | None = None) -> None:
        self._store = store
        self._logger = logger or StructuredLogger()

    def register_family(self, name: str, parent_id: str, *, family_id: str | None = None) -> Family:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Family name is required.")
        family = Family(id=family_id or str(uuid4()), name=name, member_ids=frozenset({parent_id}))
        family = self._store.add_family(family)
        self._logger.log("family_registered", family=family.id, parent=parent_id)
        return family

    def get_family(self, family_id: str) -> Family:
        return self._store.get_family(family_id)

    def add_parent(self, family_id: str, parent_id: str) -> Family:
        family = self._store.get_family(family_id)
        family.member_ids = family.member_ids | {parent_id}
        return self._store.save_family(family)

    def parent_ids(self, family_id: str) -> Tuple[str, ...]:
        return tuple(sorted(self._store.get_family(family_id).member_ids))

    def add_child(
        self,
        family_id: str,
        display_name: str,
        pin: str,
        *,
        child_id: str | None = None,
    ) -> ChildProfile:
        """Create a child profile and open its empty reward ledger."""

        self._store.get_family(family_id)
        display_name = (display_name or "").strip()
        if not display_name:
            raise ValidationError("Child display name is required.")
        child = ChildProfile(
            id=child_id or str(uuid4()),
            family_id=family_id,
            display_name=display_name,
            pin_hash=hash_pin(pin),
        )
        child = self._store.add_child(child)
        self._store.add_ledger(RewardLedger(child_id=child.id))
        self._logger.log("child_added", family=family_id, child=child.id)
        return child

    def remove_child(self, family_id: str, child_id: str) -> None:
        self.child_in_family(family_id, child_id)
        self._store.remove_child(child_id)
        self._logger.log("child_removed", family=family_id, child=child_id)

    def get_child(self, child_id: str) -> ChildProfile:
        return self._store.get_child(child_id)

    def child_in_family(self, family_id: str, child_id: str) -> ChildProfile:
        child = self._store.get_child(child_id)
        if child.family_id != family_id:
            raise NotFoundError(f"Child '{child_id}' does not belong to family '{family_id}'.")
        return child

    def list_children(self, family_id: str) -> Tuple[ChildProfile, ...]:
        return self._store.list_children(family_id)

    def verify_child_pin(self, child_id: str, pin: str) -> Actor:
        child = self._store.get_child(child_id)
        if not verify_pin(pin, child.pin_hash):
            raise PermissionDeniedError("Invalid PIN.")
        return Actor.child(child.id, child.family_id)


__all__ = ["FamilyDirectory"]
