"""
Users and addresses.

Users are upserted by the identity provider's uid when they log in; the
admin flag is derived from the trusted admin email and never accepted from
the caller. Addresses are append-only.
"""
import logging
import os
from typing import List, Optional

from pydantic import ValidationError as PydanticValidationError

from errors import ValidationError
from resources import ResourceClient
from schemas import Address, Session, User, record

logger = logging.getLogger(__name__)

ADMIN_EMAIL = os.getenv("ADMIN_EMAIL", "admin@example.com")


def is_admin_email(email: Optional[str], admin_email: Optional[str] = None) -> bool:
    return (email or "").strip() == (admin_email or ADMIN_EMAIL).strip()


def upsert_user(
    client: ResourceClient, uid: str, email: str, name: str = "", admin_email: Optional[str] = None
) -> User:
    user = User(uid=uid, email=email, name=name or "", is_admin=is_admin_email(email, admin_email))
    existing = client.find_one("users", {"uid": uid})
    if existing:
        saved = client.update(
            "users", existing["id"], {"email": user.email, "name": user.name, "is_admin": user.is_admin}
        )
    else:
        saved = client.create("users", record(user))
        logger.info("Registered user %s (admin=%s)", uid, user.is_admin)
    return User.model_validate(saved)


def session_for(client: ResourceClient, uid: str) -> Optional[Session]:
    found = client.find_one("users", {"uid": uid})
    if not found:
        return None
    return Session(
        uid=found["uid"],
        email=found.get("email", ""),
        name=found.get("name", ""),
        is_admin=bool(found.get("is_admin")),
    )


def add_address(client: ResourceClient, session: Session, payload: dict) -> Address:
    data = {k: (v or "").strip() for k, v in payload.items() if k in ("label", "line1", "city", "state", "pincode")}
    if not data.get("line1") or not data.get("city"):
        raise ValidationError("Address line and city required")
    data["label"] = data.get("label") or "Other"
    try:
        address = Address(user_id=session.uid, **data)
    except PydanticValidationError as e:
        raise ValidationError(str(e)) from e
    return Address.model_validate(client.create("addresses", record(address)))


def list_addresses(client: ResourceClient, session: Session) -> List[Address]:
    return [Address.model_validate(a) for a in client.list("addresses", {"user_id": session.uid})]
