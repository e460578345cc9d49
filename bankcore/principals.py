"""
Principal Module

The authenticated actor behind every core operation. Identity is resolved
once at the authentication boundary into either a customer or an employee;
nothing below that boundary re-derives which kind it is.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Union


class EmployeeRole(Enum):
    """Staff roles"""
    ADMIN = "admin"
    MANAGER = "manager"
    EMPLOYEE = "employee"


@dataclass(frozen=True)
class CustomerPrincipal:
    """A bank customer acting on their own accounts"""
    id: str


@dataclass(frozen=True)
class EmployeePrincipal:
    """A member of staff acting under a role"""
    id: str
    role: EmployeeRole

    @property
    def is_admin(self) -> bool:
        return self.role == EmployeeRole.ADMIN


Principal = Union[CustomerPrincipal, EmployeePrincipal]


class AuthenticationGateway(ABC):
    """
    Resolves a bearer credential into a Principal.

    Implementations live outside the core (HTTP layer, token service). The
    core trusts the returned principal unconditionally.
    """

    @abstractmethod
    def authenticate(self, credential: str) -> Principal:
        """Return the principal for a credential or raise PermissionDeniedError"""
        pass
