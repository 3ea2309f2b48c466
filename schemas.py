"""
Request and document schemas for SpendSense

Profiles are stored on the identity document in the "user" collection,
expenses in the "expense" collection (see database.py for the paths).
"""
from datetime import datetime
import math
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, EmailStr, Field, StrictFloat, StrictInt, field_validator

Category = Literal["Needs", "Wants", "Savings"]
Currency = Literal["USD", "INR", "EUR"]

CATEGORIES = ("Needs", "Wants", "Savings")

# JSON numbers only: no numeric strings or booleans
StrictNumber = Union[StrictInt, StrictFloat]


class AuthUser(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=6)
    display_name: Optional[str] = None
    income: float = Field(0, ge=0, allow_inf_nan=False)


class User(BaseModel):
    email: EmailStr
    password_hash: str
    email_verified: bool = False
    token_version: int = 0
    display_name: Optional[str] = None
    income: float = 0
    currency: Currency = "USD"
    savings_goal: float = 0
    bio: str = ""


class UserProfile(BaseModel):
    uid: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    income: float = 0
    currency: Currency = "USD"
    savings_goal: float = 0
    bio: str = ""
    photo_url: Optional[str] = None


class ProfileSettings(BaseModel):
    display_name: str
    income: float = Field(..., allow_inf_nan=False)
    savings_goal: float = Field(0, allow_inf_nan=False)
    bio: Optional[str] = ""
    currency: Currency = "USD"

    @field_validator("display_name")
    @classmethod
    def _display_name(cls, v: str) -> str:
        v = v.strip()
        if len(v) < 2:
            raise ValueError("Name must be at least 2 characters.")
        if len(v) > 50:
            raise ValueError("Name must not be longer than 50 characters.")
        return v

    @field_validator("income")
    @classmethod
    def _income(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("Income must be a positive number.")
        return v

    @field_validator("savings_goal")
    @classmethod
    def _savings_goal(cls, v: float) -> float:
        if v < 0:
            raise ValueError("Savings goal cannot be negative.")
        return v

    @field_validator("bio")
    @classmethod
    def _bio(cls, v: Optional[str]) -> str:
        v = v or ""
        if len(v) > 160:
            raise ValueError("Bio must not be longer than 160 characters.")
        return v


class IncomeUpdate(BaseModel):
    income: float = Field(..., allow_inf_nan=False)

    @field_validator("income")
    @classmethod
    def _income(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("Income must be a positive number.")
        return v


class ProfileUpdate(BaseModel):
    display_name: str
    photo_url: Optional[str] = None

    @field_validator("display_name")
    @classmethod
    def _display_name(cls, v: str) -> str:
        v = v.strip()
        if len(v) < 2:
            raise ValueError("Name must be at least 2 characters.")
        return v


class ExpenseIn(BaseModel):
    name: str
    amount: float = Field(..., allow_inf_nan=False)
    category: Category = "Needs"

    @field_validator("name")
    @classmethod
    def _name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Expense name is required.")
        return v

    @field_validator("amount")
    @classmethod
    def _amount(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("Amount must be a positive number.")
        return v


class Expense(BaseModel):
    id: str
    name: str
    amount: float
    category: Category
    created_at: Optional[datetime] = None


class AdvisorExpense(BaseModel):
    name: str
    amount: StrictNumber
    category: Category

    @field_validator("amount")
    @classmethod
    def _amount(cls, v):
        if not math.isfinite(v):
            raise ValueError("amount must be a finite number")
        return v


class AdvisorRequest(BaseModel):
    query: str
    income: Optional[StrictNumber] = None
    expenses: Optional[List[AdvisorExpense]] = None

    @field_validator("income")
    @classmethod
    def _income(cls, v):
        if v is not None and not math.isfinite(v):
            raise ValueError("income must be a finite number")
        return v

    @field_validator("query")
    @classmethod
    def _query(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("query must not be empty")
        return v.strip()


class TokenRequest(BaseModel):
    token: str


class EmailRequest(BaseModel):
    email: EmailStr


class PasswordReset(BaseModel):
    token: str
    password: str = Field(..., min_length=6)


class JWTToken(BaseModel):
    access_token: str
    token_type: str = "bearer"
