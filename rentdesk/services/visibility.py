"""
Row-level read scoping.

Which rows a role may read comes from the capability table like every other
check:

- rental:view_all / reservation:view_all / commission:view_all see everything
- rental:view_assigned sees rentals where the actor is the agent
- commission:view without view_all sees the actor's own commissions
- anyone else sees only rentals and reservations whose customer e-mail is
  the actor's login e-mail

A missing actor is a system call and is not scoped.
"""
from typing import Optional

from sqlalchemy import false, func, or_
from sqlalchemy.orm import Query, Session

from ..models.models import Commission, Customer, Rental, RentalCustomer, Reservation, User
from .permissions import Actor, PermissionTable, default_permissions


def actor_email(db: Session, actor: Actor) -> Optional[str]:
    user = db.get(User, actor.id) if actor.id else None
    if user is None or not user.email:
        return None
    return user.email.strip().lower()


def scope_rentals(
    db: Session,
    query: Query,
    actor: Optional[Actor],
    permissions: PermissionTable = default_permissions,
) -> Query:
    if actor is None or permissions.allows(actor.role, "rental:view_all"):
        return query
    if permissions.allows(actor.role, "rental:view_assigned"):
        return query.filter(Rental.agent_id == actor.id)
    email = actor_email(db, actor)
    if email is None:
        return query.filter(false())
    return query.filter(Rental.signers.any(
        RentalCustomer.customer.has(func.lower(Customer.email) == email)
    ))


def scope_reservations(
    db: Session,
    query: Query,
    actor: Optional[Actor],
    permissions: PermissionTable = default_permissions,
) -> Query:
    if actor is None or permissions.allows(actor.role, "reservation:view_all"):
        return query
    email = actor_email(db, actor)
    if email is None:
        return query.filter(false())
    return query.filter(or_(
        func.lower(Reservation.customer_email) == email,
        Reservation.customer.has(func.lower(Customer.email) == email),
    ))


def scope_commissions(
    query: Query,
    actor: Optional[Actor],
    permissions: PermissionTable = default_permissions,
) -> Query:
    """Callers check commission:view first; this only narrows agents to their own rows."""
    if actor is None or permissions.allows(actor.role, "commission:view_all"):
        return query
    return query.filter(Commission.agent_id == actor.id)
