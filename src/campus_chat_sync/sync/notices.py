"""Transient, dismissible notices shown to the user."""

from collections import deque
from datetime import datetime
from enum import Enum
from typing import Deque, List
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from ..domain.models import utcnow


class NoticeLevel(str, Enum):
    INFO = "info"
    ERROR = "error"


class Notice(BaseModel):
    """Notice model."""

    id: UUID = Field(default_factory=uuid4)
    level: NoticeLevel = NoticeLevel.ERROR
    text: str
    created_at: datetime = Field(default_factory=utcnow)


class NoticeBoard:
    """Bounded list of notices; the oldest is dropped when full."""

    def __init__(self, max_notices: int = 20) -> None:
        self._notices: Deque[Notice] = deque(maxlen=max_notices)

    def post(self, text: str, level: NoticeLevel = NoticeLevel.ERROR) -> Notice:
        notice = Notice(text=text, level=level)
        self._notices.append(notice)
        return notice

    def dismiss(self, notice_id: UUID) -> bool:
        for notice in self._notices:
            if notice.id == notice_id:
                self._notices.remove(notice)
                return True
        return False

    def list(self) -> List[Notice]:
        return list(self._notices)

    def clear(self) -> None:
        self._notices.clear()
