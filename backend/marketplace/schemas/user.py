# backend/marketplace/schemas/user.py

from pydantic import BaseModel, EmailStr
from typing import Optional

from ..models.user import UserType


class UserBase(BaseModel):
    email: EmailStr
    first_name: str
    last_name: str
    user_type: UserType = UserType.CLIENT


class UserResponse(UserBase):
    id: int
    is_active: bool
    payout_account_id: Optional[str] = None

    model_config = {
        "from_attributes": True
    }


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"
    refresh_token: Optional[str] = None


class RefreshRequest(BaseModel):
    refresh_token: str


# TokenData for extracting “sub” (email) from JWT
class TokenData(BaseModel):
    email: Optional[str] = None
