from pydantic import BaseModel, Field
from typing import Optional, Annotated
from datetime import datetime


class ReviewBase(BaseModel):
  rating: Annotated[int, Field(ge=1, le=5)]
  comment: Optional[str] = None


class ReviewCreate(ReviewBase):
  """Client → provider review payload (booking-bound)."""
  pass


class ReviewResponse(ReviewBase):
  id: int
  service_id: str
  transaction_id: int
  reviewer_id: int
  service_provider_id: int
  created_at: Optional[datetime] = None

  model_config = {"from_attributes": True}
