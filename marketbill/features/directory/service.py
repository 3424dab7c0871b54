"""
Read-only directories over users and listings.

Both are owned by other systems (auth/profile, catalog). The billing engine
only reads them: role membership and account standing for eligibility, item
ownership for featuring and boosting.
"""
from dataclasses import dataclass, field
from typing import Protocol, Optional, List
from sqlalchemy import select, and_

from marketbill.core.database import get_db_session, users, listings


@dataclass(frozen=True)
class SellerAccount:
    user_id: str
    roles: List[str] = field(default_factory=list)
    verification_status: str = "pending"
    account_status: str = "active"
    disabled_roles: List[str] = field(default_factory=list)
    email: Optional[str] = None
    display_name: Optional[str] = None


@dataclass(frozen=True)
class ListingRef:
    item_type: str
    item_id: str
    owner_id: str
    title: Optional[str] = None


class UserDirectory(Protocol):
    def get_user(self, user_id: str) -> Optional[SellerAccount]:
        ...


class ListingDirectory(Protocol):
    def get_listing(self, item_type: str, item_id: str) -> Optional[ListingRef]:
        ...


class SqlUserDirectory:
    """Reads the app_users table."""

    def get_user(self, user_id: str) -> Optional[SellerAccount]:
        with get_db_session() as session:
            row = session.execute(
                select(users).where(users.c.user_id == user_id)
            ).mappings().fetchone()

        if not row:
            return None

        return SellerAccount(
            user_id=row["user_id"],
            roles=list(row["roles"] or []),
            verification_status=row["verification_status"],
            account_status=row["account_status"],
            disabled_roles=list(row["disabled_roles"] or []),
            email=row["email"],
            display_name=row["display_name"],
        )


class SqlListingDirectory:
    """Reads the listings table."""

    def get_listing(self, item_type: str, item_id: str) -> Optional[ListingRef]:
        with get_db_session() as session:
            row = session.execute(
                select(listings).where(
                    and_(
                        listings.c.item_type == item_type,
                        listings.c.item_id == item_id,
                    )
                )
            ).mappings().fetchone()

        if not row:
            return None

        return ListingRef(
            item_type=row["item_type"],
            item_id=row["item_id"],
            owner_id=row["owner_id"],
            title=row["title"],
        )


_user_directory: UserDirectory = SqlUserDirectory()
_listing_directory: ListingDirectory = SqlListingDirectory()


def get_user_directory() -> UserDirectory:
    return _user_directory


def get_listing_directory() -> ListingDirectory:
    return _listing_directory


def set_user_directory(directory: UserDirectory) -> None:
    global _user_directory
    _user_directory = directory


def set_listing_directory(directory: ListingDirectory) -> None:
    global _listing_directory
    _listing_directory = directory
