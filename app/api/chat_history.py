from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Response, status
from pydantic import BaseModel
from sqlalchemy import func
from sqlalchemy.orm import Session

from app.api.auth import get_current_user
from app.db.models import ChatMessage, User
from app.db.session import get_db

router = APIRouter(prefix="/chat", tags=["chat"])

THREAD_TITLE_LENGTH = 90


class ThreadItem(BaseModel):
    thread_id: str
    title: str
    message_count: int
    updated_at: str


class ThreadListResponse(BaseModel):
    items: list[ThreadItem]


class MessageItem(BaseModel):
    id: int
    role: str
    content: str
    created_at: str


class ThreadMessagesResponse(BaseModel):
    thread_id: str
    title: str
    messages: list[MessageItem]


def thread_title(first_user_message: Optional[str]) -> str:
    first_line = " ".join((first_user_message or "").strip().split())
    if not first_line:
        return "New Chat"
    if len(first_line) > THREAD_TITLE_LENGTH:
        return f"{first_line[:THREAD_TITLE_LENGTH].rstrip()}..."
    return first_line


def _first_user_message(db: Session, user_id: int, thread_id: str) -> Optional[str]:
    row = (
        db.query(ChatMessage.content)
        .filter(
            ChatMessage.user_id == user_id,
            ChatMessage.thread_id == thread_id,
            ChatMessage.role == "user",
        )
        .order_by(ChatMessage.created_at.asc(), ChatMessage.id.asc())
        .first()
    )
    return row.content if row else None


@router.get("/threads", response_model=ThreadListResponse)
def list_threads(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> ThreadListResponse:
    rows = (
        db.query(
            ChatMessage.thread_id,
            func.count(ChatMessage.id).label("message_count"),
            func.max(ChatMessage.created_at).label("updated_at"),
        )
        .filter(ChatMessage.user_id == user.id)
        .group_by(ChatMessage.thread_id)
        .order_by(func.max(ChatMessage.created_at).desc())
        .all()
    )
    items = [
        ThreadItem(
            thread_id=row.thread_id,
            title=thread_title(_first_user_message(db, user.id, row.thread_id)),
            message_count=int(row.message_count or 0),
            updated_at=row.updated_at.isoformat(),
        )
        for row in rows
    ]
    return ThreadListResponse(items=items)


@router.get("/threads/{thread_id}/messages", response_model=ThreadMessagesResponse)
def get_thread_messages(
    thread_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> ThreadMessagesResponse:
    rows = (
        db.query(ChatMessage)
        .filter(ChatMessage.thread_id == thread_id, ChatMessage.user_id == user.id)
        .order_by(ChatMessage.created_at.asc(), ChatMessage.id.asc())
        .all()
    )
    if not rows:
        raise HTTPException(status_code=404, detail="Chat thread not found")
    first_user = next((row.content for row in rows if row.role == "user"), None)
    messages = [
        MessageItem(
            id=row.id,
            role=row.role,
            content=row.content,
            created_at=row.created_at.isoformat(),
        )
        for row in rows
    ]
    return ThreadMessagesResponse(thread_id=thread_id, title=thread_title(first_user), messages=messages)


@router.delete("/threads/{thread_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_thread(
    thread_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> Response:
    deleted = (
        db.query(ChatMessage)
        .filter(ChatMessage.thread_id == thread_id, ChatMessage.user_id == user.id)
        .delete(synchronize_session=False)
    )
    if not deleted:
        raise HTTPException(status_code=404, detail="Chat thread not found")
    db.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)
