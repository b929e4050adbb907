from dataclasses import dataclass
from src.auth.permissions import normalize_role, permissions_for_role


@dataclass
class AuthContext:
    """Identity of a dashboard user acting for one company."""
    user_id: str
    company_id: str
    role: str
    email: str | None = None
    permissions: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        self.role = normalize_role(self.role)
        if self.permissions:
            self.permissions = tuple(sorted(set(self.permissions)))
            return
        self.permissions = tuple(sorted(permissions_for_role(self.role)))


@dataclass
class SuperAdminContext:
    """Operator identity for webhook remediation. Not bound to a company."""
    super_admin_id: str
    email: str
