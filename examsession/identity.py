"""
Identity adapters: one session engine for authenticated students and
anonymous guests.
"""

from dataclasses import dataclass
from typing import Optional


class IdentityProvider:
    """Capability the session uses to identify its taker."""

    kind = "unknown"

    def credentials(self) -> dict:
        """Fields sent with the start request."""
        raise NotImplementedError

    def requester(self) -> dict:
        """Identity sent with a resume request."""
        raise NotImplementedError

    def auth_headers(self) -> dict:
        return {}

    def display_name(self) -> str:
        raise NotImplementedError


@dataclass
class StudentIdentity(IdentityProvider):
    student_id: str
    token: str
    name: Optional[str] = None

    kind = "student"

    def credentials(self) -> dict:
        return {"requester_type": self.kind, "student_id": self.student_id}

    def requester(self) -> dict:
        data = {"requester_type": self.kind, "student_id": self.student_id}
        if self.name:
            data["name"] = self.name
        return data

    def auth_headers(self) -> dict:
        return {"Authorization": f"Bearer {self.token}"}

    def display_name(self) -> str:
        return self.name or self.student_id


@dataclass
class GuestIdentity(IdentityProvider):
    name: str
    email: str
    phone: Optional[str] = None
    session_token: Optional[str] = None

    kind = "guest"

    def __post_init__(self):
        if not self.name.strip():
            raise ValueError("Guest name is required")
        if "@" not in self.email:
            raise ValueError(f"Invalid guest email: {self.email}")
        self.email = self.email.strip().lower()

    def credentials(self) -> dict:
        data = {"requester_type": self.kind, "name": self.name, "email": self.email}
        if self.phone:
            data["phone"] = self.phone
        return data

    def requester(self) -> dict:
        return {"requester_type": self.kind, "name": self.name, "email": self.email}

    def auth_headers(self) -> dict:
        if self.session_token:
            return {"X-Session-Token": self.session_token}
        return {}

    def display_name(self) -> str:
        return f"{self.name} <{self.email}>"
