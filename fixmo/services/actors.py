"""
Who is calling. Identity comes from the verified bearer token (fixmo.api.auth);
services only check ownership and role before touching any record.
"""
import uuid
from dataclasses import dataclass

from fixmo.exceptions import AuthorizationError

CUSTOMER = "customer"
PROVIDER = "provider"
ADMIN = "admin"

ACTOR_TYPES = (CUSTOMER, PROVIDER, ADMIN)


@dataclass(frozen=True)
class Actor:
    user_id: uuid.UUID
    user_type: str

    @property
    def is_admin(self) -> bool:
        return self.user_type == ADMIN

    def is_customer_of(self, record) -> bool:
        return self.user_type == CUSTOMER and self.user_id == record.customer_id

    def is_provider_of(self, record) -> bool:
        return self.user_type == PROVIDER and self.user_id == record.provider_id


def require_admin(actor: Actor) -> None:
    if not actor.is_admin:
        raise AuthorizationError("Admin access required")


def require_participant(actor: Actor, record, allow_admin: bool = True) -> None:
    """Actor must be the record's customer or provider (or an admin)."""
    if allow_admin and actor.is_admin:
        return
    if actor.is_customer_of(record) or actor.is_provider_of(record):
        return
    raise AuthorizationError("You are not a participant in this appointment")
