from typing import List, Optional

from pydantic import BaseModel, Field


# Wire shapes of the verification provider API (snake_case as sent by the provider).

class TokenResponse(BaseModel):
    access_token: str
    expires_in: int
    token_type: Optional[str] = None
    scope: Optional[str] = None


class CoverageProduct(BaseModel):
    product_id: str
    product_name: str


class CoverageResponse(BaseModel):
    products: List[CoverageProduct] = Field(default_factory=list)


class CheckCreated(BaseModel):
    check_id: str
    status: Optional[str] = None


class CheckCompleted(BaseModel):
    status: str
    match: bool = False
    no_sim_change: bool = True
    # provider spelling
    sim_change_withing: Optional[int] = None
