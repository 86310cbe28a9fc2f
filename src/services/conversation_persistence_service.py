"""Persistence service for capture conversations and their messages.

Thin layer between the capture orchestrator and the SQLAlchemy models.
Messages are append-only and ordered by a per-conversation sequence
number; a conversation accepts new messages only while it is active.
"""

import logging
from typing import Any

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.db.models import (
    Conversation,
    ConversationStatus,
    Message,
    MessageRole,
    generate_uuid,
    utc_now_iso,
)
from src.errors.domain import ConflictError, LockedError, NotFoundError, ValidationError
from src.services.locks import conversation_lock_key, record_lock

logger = logging.getLogger(__name__)

_VALID_ROLES = {r.value for r in MessageRole}


class ConversationPersistenceService:
    """CRUD operations for capture conversations and messages.

    Args:
        db: SQLAlchemy session (sync).
    """

    def __init__(self, db: Session) -> None:
        self._db = db

    def create_conversation(
        self,
        user_id: str,
        student_id: str | None = None,
    ) -> Conversation:
        """Create a new active conversation.

        Args:
            user_id: Owning user (teacher).
            student_id: Student the conversation is about, if known.

        Returns:
            The created Conversation.
        """
        if not isinstance(user_id, str) or not user_id.strip():
            raise ValidationError("A user id is required", fields=["user_id"])
        now = utc_now_iso()
        conversation = Conversation(
            id=generate_uuid(),
            user_id=user_id.strip(),
            student_id=student_id.strip() if student_id and student_id.strip() else None,
            status=ConversationStatus.active.value,
            created_at=now,
            updated_at=now,
        )
        self._db.add(conversation)
        self._db.commit()
        logger.info("Started conversation %s", conversation.id)
        return conversation

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        """Get a conversation by ID, or None."""
        return self._db.get(Conversation, conversation_id)

    def require_conversation(self, conversation_id: str) -> Conversation:
        """Get a conversation by ID.

        Raises:
            NotFoundError: If no conversation has that ID.
        """
        conversation = self.get_conversation(conversation_id)
        if conversation is None:
            raise NotFoundError("Conversation", conversation_id)
        return conversation

    def append_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
    ) -> Message:
        """Append a message with the next sequence number.

        Args:
            conversation_id: Parent conversation ID.
            role: 'user', 'assistant', or 'system'.
            content: Message text.

        Returns:
            The created Message.

        Raises:
            NotFoundError: Unknown conversation.
            LockedError: Conversation is closed.
            ValidationError: Unknown role or empty content.
        """
        role_value = role.value if isinstance(role, MessageRole) else role
        if role_value not in _VALID_ROLES:
            raise ValidationError(
                f"Unknown message role: {role_value!r}", fields=["role"]
            )
        if not isinstance(content, str) or not content.strip():
            raise ValidationError("Message content must not be empty", fields=["content"])

        with record_lock(conversation_lock_key(conversation_id)):
            conversation = self._db.get(
                Conversation, conversation_id, populate_existing=True
            )
            if conversation is None:
                raise NotFoundError("Conversation", conversation_id)
            if not conversation.is_active:
                raise LockedError(
                    "Conversation", conversation_id, conversation.status, "append a message"
                )

            max_seq = (
                self._db.query(func.max(Message.sequence))
                .filter(Message.conversation_id == conversation_id)
                .scalar()
            )
            msg = Message(
                id=generate_uuid(),
                conversation_id=conversation_id,
                role=role_value,
                content=content,
                sequence=(max_seq or 0) + 1,
                created_at=utc_now_iso(),
            )
            self._db.add(msg)
            conversation.updated_at = utc_now_iso()
            try:
                self._db.commit()
            except IntegrityError as e:
                self._db.rollback()
                raise ConflictError(
                    f"Conversation '{conversation_id}' received a concurrent message"
                ) from e

        logger.debug(
            "Appended %s message #%d to conversation %s",
            role_value,
            msg.sequence,
            conversation_id,
        )
        return msg

    def get_messages(self, conversation_id: str) -> list[Message]:
        """Return a conversation's messages in dialogue order."""
        return (
            self._db.query(Message)
            .filter(Message.conversation_id == conversation_id)
            .order_by(Message.sequence)
            .all()
        )

    def close_conversation(self, conversation_id: str) -> Conversation:
        """Close a conversation. Closing an already closed one is a no-op.

        Raises:
            NotFoundError: Unknown conversation.
        """
        with record_lock(conversation_lock_key(conversation_id)):
            conversation = self.require_conversation(conversation_id)
            if not conversation.is_active:
                return conversation
            now = utc_now_iso()
            conversation.status = ConversationStatus.closed.value
            conversation.closed_at = now
            conversation.updated_at = now
            self._db.commit()
        logger.info("Closed conversation %s", conversation_id)
        return conversation

    def save_extraction_baseline(
        self, conversation_id: str, fields: dict[str, Any]
    ) -> Conversation:
        """Remember what the last successful extraction produced.

        Raises:
            NotFoundError: Unknown conversation.
        """
        with record_lock(conversation_lock_key(conversation_id)):
            conversation = self.require_conversation(conversation_id)
            conversation.extraction_baseline = fields
            self._db.commit()
        return conversation

    def delete_conversation(self, conversation_id: str) -> None:
        """Delete a conversation and its messages.

        A linked incident is kept; its conversation reference becomes NULL.

        Raises:
            NotFoundError: Unknown conversation.
        """
        with record_lock(conversation_lock_key(conversation_id)):
            conversation = self.require_conversation(conversation_id)
            self._db.delete(conversation)
            self._db.commit()
        logger.info("Deleted conversation %s", conversation_id)

    def list_conversations(
        self,
        user_id: str | None = None,
        active_only: bool = False,
    ) -> list[dict[str, Any]]:
        """List conversations with message counts, most recently updated first.

        Args:
            user_id: Filter by owning user.
            active_only: If True, exclude closed conversations.

        Returns:
            List of conversation summary dicts (no message bodies).
        """
        query = self._db.query(
            Conversation.id,
            Conversation.user_id,
            Conversation.student_id,
            Conversation.status,
            Conversation.created_at,
            Conversation.updated_at,
            func.count(Message.id).label("message_count"),
        ).outerjoin(Message).group_by(Conversation.id)

        if user_id is not None:
            query = query.filter(Conversation.user_id == user_id)
        if active_only:
            query = query.filter(Conversation.status == ConversationStatus.active.value)

        query = query.order_by(
            Conversation.updated_at.desc(),
            Conversation.created_at.desc(),
        )

        return [
            {
                "id": row.id,
                "user_id": row.user_id,
                "student_id": row.student_id,
                "status": row.status,
                "created_at": row.created_at,
                "updated_at": row.updated_at,
                "message_count": row.message_count,
            }
            for row in query.all()
        ]

    def get_conversation_with_messages(
        self, conversation_id: str
    ) -> dict[str, Any] | None:
        """Load a conversation with its messages for display.

        Returns:
            Dict with 'conversation' and 'messages' keys, or None if not found.
        """
        conversation = self.get_conversation(conversation_id)
        if conversation is None:
            return None

        messages = [
            {
                "id": m.id,
                "role": m.role,
                "content": m.content,
                "sequence": m.sequence,
                "created_at": m.created_at,
            }
            for m in self.get_messages(conversation_id)
        ]
        return {
            "conversation": {
                "id": conversation.id,
                "user_id": conversation.user_id,
                "student_id": conversation.student_id,
                "status": conversation.status,
                "created_at": conversation.created_at,
                "updated_at": conversation.updated_at,
                "closed_at": conversation.closed_at,
            },
            "messages": messages,
        }
