"""Data models shared by the inbox sync components.

Server payloads are parsed into these pydantic models at the REST and
realtime boundaries. Models for server-owned entities allow extra fields so
that attributes this client does not know about survive a round trip.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel, ConfigDict, Field


class SyncStatus(str, Enum):
    """Outcome of a page sync invocation."""
    SUCCESS = "success"
    PARTIAL = "partial"
    ERROR = "error"


class HandlerType(str, Enum):
    """Who is currently answering a conversation."""
    CHATBOT = "chatbot"
    HUMAN = "human"


# =============================================================================
# Tags
# =============================================================================

class Tag(BaseModel):
    """A colored label assignable to conversations of the pages it belongs to.

    Attributes:
        tag_id: Immutable identity
        tag_name: Display name
        tag_color: Hex color, e.g. "#FF5733"
        facebook_page_ids: Pages this tag is scoped to
        description: Optional free text
        is_active: Inactive tags are hidden from pickers server-side
    """
    model_config = ConfigDict(extra="allow")

    tag_id: str
    tag_name: str
    tag_color: str = "#6c757d"
    facebook_page_ids: List[str] = Field(default_factory=list)
    description: Optional[str] = None
    is_active: bool = True


class TagView(BaseModel):
    """A catalogue tag joined with its assignment state for one conversation."""
    tag: Tag
    active: bool


class ConversationTagState(BaseModel):
    """The set of tag ids currently assigned to one conversation."""
    conversation_id: str
    tag_ids: Set[str] = Field(default_factory=set)

    def has(self, tag_id: str) -> bool:
        return tag_id in self.tag_ids

    def ordered(self, previous: Optional[List[str]] = None) -> List[str]:
        """Tag ids as a list, keeping the order of ``previous`` where possible."""
        previous = previous or []
        kept = [tag_id for tag_id in previous if tag_id in self.tag_ids]
        added = sorted(self.tag_ids.difference(kept))
        return kept + added


# =============================================================================
# Conversations and messages
# =============================================================================

class Message(BaseModel):
    model_config = ConfigDict(extra="allow")

    message_id: str
    conversation_id: str
    sender_type: str = "customer"
    sender_name: Optional[str] = None
    text: str = ""
    attachments: List[Dict[str, Any]] = Field(default_factory=list)
    sent_at: Optional[datetime] = None
    is_read: bool = False


class Conversation(BaseModel):
    """Client working copy of a conversation.

    The authoritative copy lives on the server; this copy converges to it
    through REST responses and realtime events. Fields an update does not
    carry are left untouched.
    """
    model_config = ConfigDict(extra="allow")

    conversation_id: str
    facebook_page_id: Optional[str] = None
    customer_id: Optional[str] = None
    customer_name: Optional[str] = None
    customer_profile_pic: Optional[str] = None
    source: str = "messenger"
    status: str = "open"
    current_handler: Optional[HandlerType] = None
    assigned_to: Optional[str] = None
    needs_attention: bool = False
    priority: Optional[str] = None
    is_read: bool = True
    unread_customer_messages: int = 0
    last_message_text: Optional[str] = None
    last_message_at: Optional[datetime] = None
    escalation_reason: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    updated_at: Optional[datetime] = None

    def apply_fields(self, fields: Dict[str, Any]) -> bool:
        """Assign every field present in ``fields``; return True if anything changed.

        Values are validated through the model so that e.g. timestamps from
        JSON payloads become datetimes, then assigned one by one.
        """
        fields = {k: v for k, v in fields.items() if k != "conversation_id"}
        if not fields:
            return False
        merged = self.model_dump()
        merged.update(self.model_extra or {})
        merged.update(fields)
        validated = Conversation.model_validate(merged)

        changed = False
        for key in fields:
            new_value = getattr(validated, key, fields[key])
            if getattr(self, key, None) != new_value:
                setattr(self, key, new_value)
                changed = True
        return changed


class ConversationUpdate(BaseModel):
    """A partial conversation snapshot pushed by the server.

    Only the fields present in the payload are applied; a ``tags`` value of
    None is treated the same as an absent field.
    """
    model_config = ConfigDict(extra="allow")

    conversation_id: str
    tags: Optional[List[str]] = None

    def changes(self) -> Dict[str, Any]:
        data = self.model_dump(exclude_unset=True, exclude={"conversation_id"})
        data.update(self.model_extra or {})
        if data.get("tags") is None:
            data.pop("tags", None)
        return data


class EscalationEvent(BaseModel):
    conversation_id: str
    customer_id: Optional[str] = None
    escalation_reason: Optional[str] = None
    escalated_at: Optional[datetime] = None


class TypingIndicator(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    conversation_id: str = Field(alias="conversationId")
    user_id: str = Field(alias="userId")
    is_typing: bool = Field(alias="isTyping")


class MessagesRead(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    conversation_id: str = Field(alias="conversationId")
    message_ids: List[str] = Field(default_factory=list, alias="messageIds")
    user_id: Optional[str] = Field(default=None, alias="userId")


# =============================================================================
# Facebook connection
# =============================================================================

class FacebookPage(BaseModel):
    model_config = ConfigDict(extra="allow")

    facebook_page_id: str
    name: str = ""
    category: Optional[str] = None
    picture_url: Optional[str] = None
    sync_status: Optional[str] = None
    last_sync: Optional[datetime] = None


class FacebookConnectionStatus(BaseModel):
    model_config = ConfigDict(extra="allow")

    is_connected: bool = False
    connected_by: Optional[str] = None
    connected_at: Optional[datetime] = None
    facebook_user_name: Optional[str] = None
    pages_count: Optional[int] = None
    last_sync: Optional[datetime] = None
    sync_status: Optional[str] = None
    error_message: Optional[str] = None


class OAuthUrl(BaseModel):
    oauth_url: str
    state: str


class PageSyncResult(BaseModel):
    """Result of one page sync invocation.

    ``sync_status`` is always derived from the counts, never from the absence
    of an error message.
    """
    pages_synced: int = 0
    pages_total: int = 0
    sync_status: SyncStatus = SyncStatus.ERROR
    error_message: Optional[str] = None
    failed_pages: Optional[List[str]] = None

    @staticmethod
    def classify(pages_synced: int, pages_total: int) -> SyncStatus:
        if pages_synced == pages_total:
            return SyncStatus.SUCCESS
        if pages_synced == 0:
            return SyncStatus.ERROR
        return SyncStatus.PARTIAL

    @classmethod
    def from_response(cls, data: Dict[str, Any]) -> "PageSyncResult":
        synced = int(data.get("pages_synced") or 0)
        total = int(data.get("pages_total") or 0)
        return cls(
            pages_synced=synced,
            pages_total=total,
            sync_status=cls.classify(synced, total),
            error_message=data.get("error_message"),
            failed_pages=data.get("failed_pages"),
        )

    @classmethod
    def failed(cls, message: str, pages_total: int = 0) -> "PageSyncResult":
        return cls(
            pages_synced=0,
            pages_total=pages_total,
            sync_status=SyncStatus.ERROR,
            error_message=message,
        )

    @property
    def summary(self) -> str:
        if self.sync_status == SyncStatus.SUCCESS:
            return f"Synced {self.pages_synced} pages"
        if self.sync_status == SyncStatus.PARTIAL:
            failed = ", ".join(self.failed_pages or [])
            text = f"Partially synced: {self.pages_synced}/{self.pages_total} pages"
            return f"{text}. Failed: {failed}" if failed else text
        return self.error_message or "Page sync failed"


# =============================================================================
# Users
# =============================================================================

class UserProfile(BaseModel):
    model_config = ConfigDict(extra="allow")

    user_id: str
    email: Optional[str] = None
    full_name: Optional[str] = None
    roles: List[str] = Field(default_factory=list)
    company_id: Optional[str] = None
    merged_pages_filter: List[str] = Field(default_factory=list)

    @property
    def is_admin(self) -> bool:
        return "admin" in self.roles
