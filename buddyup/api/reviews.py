"""Post-trip review endpoints"""
import logging

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from buddyup.api import auth
from buddyup.services import reviews

log = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/v1",
    tags=["reviews"],
    dependencies=[Depends(auth.get_current_user_id)]
)


class ReviewCreate(BaseModel):
    reviewee_id: str
    rating: int
    comment: str | None = Field(None, max_length=1000)
    tags: list[str] | None = None


@router.post("/trips/{trip_id}/reviews", status_code=status.HTTP_201_CREATED)
def submit_review(trip_id: str, body: ReviewCreate, user_id: str = Depends(auth.get_current_user_id)):
    return reviews.submit_review(trip_id, user_id, body.reviewee_id, body.rating, body.comment, body.tags)


@router.get("/trips/{trip_id}/reviewable")
def reviewable_participants(trip_id: str, user_id: str = Depends(auth.get_current_user_id)):
    """Members of a completed trip the caller still has to review."""
    return reviews.get_reviewable_participants(trip_id, user_id)


@router.get("/users/{target_user_id}/reviews")
def user_reviews(target_user_id: str):
    return reviews.get_user_reviews(target_user_id)


@router.get("/users/{target_user_id}/stats")
def user_stats(target_user_id: str):
    return reviews.get_user_stats(target_user_id)
