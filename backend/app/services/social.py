"""Social actions whose side effect is a notification for the affected user.

Each action commits its triggering row and the staged notification in one
transaction, so a failure leaves neither behind and a retry is safe.
"""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models import Post, PostComment, PostLike, User, UserFollow
from app.schemas import CommentRead, FollowRead, LikeRead, NotificationRead
from app.services.errors import InvalidArgument, NotFound
from app.services.notifications import (
    comment_draft,
    emit_notification,
    follow_draft,
    like_draft,
)

logger = logging.getLogger(__name__)


def _require_user(db: Session, user_id: int) -> User:
    user = db.get(User, user_id)
    if user is None:
        raise NotFound("User not found")
    return user


def _require_post(db: Session, post_id: int) -> Post:
    post = db.get(Post, post_id)
    if post is None:
        raise NotFound("Post not found")
    return post


def follow_user(
    db: Session, follower_id: int, following_id: int
) -> tuple[FollowRead, NotificationRead | None]:
    if follower_id == following_id:
        raise InvalidArgument("Cannot follow yourself")
    actor = _require_user(db, follower_id)
    _require_user(db, following_id)

    stmt = select(UserFollow).where(
        UserFollow.follower_id == follower_id, UserFollow.following_id == following_id
    )
    follow = db.execute(stmt).scalar_one_or_none()
    if follow is None:
        follow = UserFollow(follower_id=follower_id, following_id=following_id)
        db.add(follow)
        try:
            db.flush()
        except IntegrityError:
            # A concurrent follow won; its notification was committed with it.
            db.rollback()
            follow = db.execute(stmt).scalar_one()

    notification, created = emit_notification(
        db,
        recipient_id=following_id,
        actor_id=follower_id,
        draft=follow_draft(actor, follow.id),
    )
    db.commit()
    return FollowRead.model_validate(follow), notification if created else None


def unfollow_user(db: Session, follower_id: int, following_id: int) -> bool:
    """Remove a follow relationship. Notifications already sent are kept."""

    stmt = select(UserFollow).where(
        UserFollow.follower_id == follower_id, UserFollow.following_id == following_id
    )
    follow = db.execute(stmt).scalar_one_or_none()
    if follow is None:
        return False
    db.delete(follow)
    db.commit()
    return True


def like_post(db: Session, user_id: int, post_id: int) -> tuple[LikeRead, NotificationRead | None]:
    actor = _require_user(db, user_id)
    post = _require_post(db, post_id)

    stmt = select(PostLike).where(PostLike.post_id == post_id, PostLike.user_id == user_id)
    like = db.execute(stmt).scalar_one_or_none()
    if like is None:
        like = PostLike(post_id=post_id, user_id=user_id)
        db.add(like)
        try:
            db.flush()
        except IntegrityError:
            db.rollback()
            like = db.execute(stmt).scalar_one()

    notification, created = emit_notification(
        db,
        recipient_id=post.user_id,
        actor_id=user_id,
        draft=like_draft(actor, like.id, post_id),
    )
    db.commit()
    return LikeRead.model_validate(like), notification if created else None


def unlike_post(db: Session, user_id: int, post_id: int) -> bool:
    stmt = select(PostLike).where(PostLike.post_id == post_id, PostLike.user_id == user_id)
    like = db.execute(stmt).scalar_one_or_none()
    if like is None:
        return False
    db.delete(like)
    db.commit()
    return True


def add_comment(
    db: Session, user_id: int, post_id: int, content: str
) -> tuple[CommentRead, NotificationRead | None]:
    text = content.strip()
    if not text:
        raise InvalidArgument("Comment cannot be empty")
    actor = _require_user(db, user_id)
    post = _require_post(db, post_id)

    comment = PostComment(post_id=post_id, user_id=user_id, content=text)
    db.add(comment)
    db.flush()

    notification, created = emit_notification(
        db,
        recipient_id=post.user_id,
        actor_id=user_id,
        draft=comment_draft(actor, comment.id, post_id, text),
    )
    db.commit()
    logger.info("Comment added", extra={"post_id": post_id, "comment_id": comment.id})
    return CommentRead.model_validate(comment), notification if created else None
