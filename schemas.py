"""
Database Schemas for the lending platform

Each record model maps to a MongoDB collection (``users``, ``loans``).
Request bodies keep loose ``str`` types for role/status so that an unknown
value is rejected by the policy layer with a 400 rather than a 422.
"""
from datetime import datetime
from typing import Optional, Literal
from pydantic import BaseModel, ConfigDict

Role = Literal["borrower", "manager", "admin"]
UserStatus = Literal["pending", "approved", "suspended"]
LoanStatus = Literal["Pending", "Reviewing", "Approved", "Rejected"]

ROLES = frozenset({"borrower", "manager", "admin"})
USER_STATUSES = frozenset({"pending", "approved", "suspended"})
LOAN_STATUSES = frozenset({"Pending", "Reviewing", "Approved", "Rejected"})

DEFAULT_ROLE = "borrower"
DEFAULT_USER_STATUS = "pending"
# Shown by GET /users/{email}/role for unknown emails
DISPLAY_ROLE_FALLBACK = "user"
PENDING = "Pending"

# Core domain schemas
class User(BaseModel):
    email: str
    role: Role = DEFAULT_ROLE
    status: UserStatus = DEFAULT_USER_STATUS
    name: Optional[str] = None
    photoURL: Optional[str] = None
    createdAt: Optional[datetime] = None

class Loan(BaseModel):
    model_config = ConfigDict(extra="allow")

    email: str
    status: LoanStatus = PENDING
    createdAt: Optional[datetime] = None
    createdBy: Optional[str] = None
    showOnHome: bool = False

# Request bodies
class UserIn(BaseModel):
    email: Optional[str] = None
    name: Optional[str] = None
    photoURL: Optional[str] = None
    role: Optional[str] = None
    status: Optional[str] = None

class ProfileUpdate(BaseModel):
    # anything else the client sends is dropped
    name: Optional[str] = None
    photoURL: Optional[str] = None

class RoleUpdate(BaseModel):
    role: Optional[str] = None

class StatusUpdate(BaseModel):
    status: Optional[str] = None

class ShowOnHomeUpdate(BaseModel):
    showOnHome: bool = False

class LoanIn(BaseModel):
    """Free-form loan application; descriptive fields are kept as sent."""

    model_config = ConfigDict(extra="allow")

class RoleStats(BaseModel):
    totalUsers: int = 0
    borrowerCount: int = 0
    managerCount: int = 0
    adminCount: int = 0
