from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict


class UserOut(BaseModel):
    id: int
    username: str
    email: str
    real_name: str
    admin: bool
    starttime: Optional[datetime] = None
    endtime: Optional[datetime] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Token(BaseModel):
    access_token: str
    token_type: str


class TokenData(BaseModel):
    id: Optional[int] = None


class OAuthProvider(BaseModel):
    provider: str
    display_name: str
    login_url: str


class OAuthProvidersResponse(BaseModel):
    providers: list[OAuthProvider]
