"""HTTP endpoints for the social actions that raise notifications."""

from __future__ import annotations

from fastapi import APIRouter, Depends, status

from app.api.deps import get_current_user_id, get_sync_service
from app.schemas import CommentCreate, CommentRead, FollowRead, LikeRead
from app.services.sync import SocialSyncService

router = APIRouter(tags=["social"])


@router.post(
    "/users/{user_id}/follow",
    response_model=FollowRead,
    status_code=status.HTTP_201_CREATED,
)
async def follow(
    user_id: int,
    current_user_id: int = Depends(get_current_user_id),
    service: SocialSyncService = Depends(get_sync_service),
) -> FollowRead:
    return await service.follow_user(current_user_id, user_id)


@router.delete("/users/{user_id}/follow", status_code=status.HTTP_204_NO_CONTENT)
async def unfollow(
    user_id: int,
    current_user_id: int = Depends(get_current_user_id),
    service: SocialSyncService = Depends(get_sync_service),
) -> None:
    await service.unfollow_user(current_user_id, user_id)


@router.post("/posts/{post_id}/like", response_model=LikeRead, status_code=status.HTTP_201_CREATED)
async def like(
    post_id: int,
    current_user_id: int = Depends(get_current_user_id),
    service: SocialSyncService = Depends(get_sync_service),
) -> LikeRead:
    return await service.like_post(current_user_id, post_id)


@router.delete("/posts/{post_id}/like", status_code=status.HTTP_204_NO_CONTENT)
async def unlike(
    post_id: int,
    current_user_id: int = Depends(get_current_user_id),
    service: SocialSyncService = Depends(get_sync_service),
) -> None:
    await service.unlike_post(current_user_id, post_id)


@router.post(
    "/posts/{post_id}/comments",
    response_model=CommentRead,
    status_code=status.HTTP_201_CREATED,
)
async def comment(
    post_id: int,
    payload: CommentCreate,
    current_user_id: int = Depends(get_current_user_id),
    service: SocialSyncService = Depends(get_sync_service),
) -> CommentRead:
    return await service.add_comment(current_user_id, post_id, payload.content)
