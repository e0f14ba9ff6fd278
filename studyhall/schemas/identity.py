"""Identity provider user schema."""

from typing import Any, Optional

from pydantic import BaseModel, Field


class IdentityUser(BaseModel):
    """The subset of a Clerk user the billing services read."""

    id: str
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    unsafe_metadata: dict[str, Any] = Field(default_factory=dict)
    public_metadata: dict[str, Any] = Field(default_factory=dict)
    private_metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def full_name(self) -> Optional[str]:
        """First and last name joined, or None when neither is set."""
        name = " ".join(part for part in (self.first_name, self.last_name) if part)
        return name or None

    def metadata_bag(self, bag: str) -> dict[str, Any]:
        """Return one of the three metadata bags by attribute name."""
        return getattr(self, bag)

    @classmethod
    def from_clerk(cls, payload: dict[str, Any]) -> "IdentityUser":
        """Build from a Clerk backend API user payload."""
        email = None
        primary_id = payload.get("primary_email_address_id")
        addresses = payload.get("email_addresses") or []
        for address in addresses:
            if address.get("id") == primary_id:
                email = address.get("email_address")
                break
        if email is None and addresses:
            email = addresses[0].get("email_address")

        return cls(
            id=payload["id"],
            email=email,
            first_name=payload.get("first_name"),
            last_name=payload.get("last_name"),
            unsafe_metadata=payload.get("unsafe_metadata") or {},
            public_metadata=payload.get("public_metadata") or {},
            private_metadata=payload.get("private_metadata") or {},
        )
