"""
Pydantic schemas for session exchange.
"""
from pydantic import BaseModel, Field

from app.features.principals.schemas import PrincipalResponse


class SessionCreate(BaseModel):
    """Identity-provider JWT to exchange for a session."""
    token: str = Field(..., min_length=1)


class SessionResponse(BaseModel):
    principal: PrincipalResponse
    expires_in: int
    bootstrapped_admin: bool = False
