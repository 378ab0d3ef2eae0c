"""Conversation view model kept consistent with REST responses and push events.

The reconciler owns the in-memory state behind the inbox screen: the
conversation list summaries and, for the open conversation, the working
copy, transcript, tag assignment and page tag catalogue.

Merge rules:
    - Updates for the open conversation change the working copy and the
      transcript. Updates for any other conversation only change its list
      summary.
    - Fields present in a server update replace local values, including
      optimistic ones. Fields absent from the update are left alone.
    - A REST response for a conversation that is no longer open is dropped.
    - Re-applying an event is a no-op: messages are deduplicated by id and
      snapshots are plain field assignments.

All state changes happen synchronously between awaits, so handlers never
observe a half-applied update.
"""

from collections import OrderedDict
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from pydantic import ValidationError

from inbox_sync.api_client import InboxApiClient
from inbox_sync.models import (
    Conversation,
    ConversationTagState,
    ConversationUpdate,
    EscalationEvent,
    HandlerType,
    Message,
    MessagesRead,
    Tag,
    TagView,
    TypingIndicator,
)
from inbox_sync.realtime.channel import (
    EVENT_CONVERSATION_ESCALATED,
    EVENT_CONVERSATION_UPDATED,
    EVENT_CUSTOMER_UPDATED,
    EVENT_MESSAGES_READ,
    EVENT_NEW_CONVERSATION,
    EVENT_NEW_MESSAGE,
    EVENT_TYPING_INDICATOR,
    Disposer,
    RealtimeChannel,
    SubscriptionScope,
)
from inbox_sync.tags.synchronizer import TagSynchronizer, tag_view
from inbox_sync.utils.exceptions import InboxAPIError
from inbox_sync.utils.logger import logger


# How many message ids to remember for redelivery detection
SEEN_MESSAGE_LIMIT = 2000


class ViewState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"


class ConversationReconciler:
    """Reconciles the open conversation and the conversation list.

    Usage:
        reconciler = ConversationReconciler(api, tag_sync, channel)
        reconciler.attach()
        await reconciler.load_conversations()
        await reconciler.open_conversation("conv-1")
        await reconciler.toggle_tag("tag-urgent")
        ...
        reconciler.close()
    """

    def __init__(self, api: InboxApiClient, tags: TagSynchronizer, channel: RealtimeChannel):
        self.api = api
        self.tags = tags
        self.channel = channel

        self.state = ViewState.IDLE
        self.conversations: "OrderedDict[str, Conversation]" = OrderedDict()
        self.open_conversation_id: Optional[str] = None
        self.current: Optional[Conversation] = None
        self.messages: List[Message] = []
        self.tag_state: Optional[ConversationTagState] = None
        self.tag_catalogue: List[Tag] = []
        self.typing_users: Set[str] = set()
        self.escalated_ids: Set[str] = set()
        self.transient_message: Optional[str] = None

        self._seen_messages: "OrderedDict[str, None]" = OrderedDict()
        # new_message events for the conversation being loaded
        self._pending_messages: List[Message] = []
        self._scope: Optional[SubscriptionScope] = None
        self._listeners: List[Callable[[], None]] = []

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def attach(self) -> None:
        """Subscribe to the realtime channel. Safe to call more than once."""
        if self._scope is not None:
            return
        self._scope = self.channel.scope()
        (
            self._scope
            .on(EVENT_NEW_MESSAGE, self.handle_new_message)
            .on(EVENT_CONVERSATION_UPDATED, self.handle_conversation_updated)
            .on(EVENT_NEW_CONVERSATION, self.handle_new_conversation)
            .on(EVENT_CUSTOMER_UPDATED, self.handle_customer_updated)
            .on(EVENT_TYPING_INDICATOR, self.handle_typing_indicator)
            .on(EVENT_MESSAGES_READ, self.handle_messages_read)
            .on(EVENT_CONVERSATION_ESCALATED, self.handle_conversation_escalated)
        )

    def close(self) -> None:
        """Dispose every channel subscription and view listener."""
        if self._scope is not None:
            self._scope.close()
            self._scope = None
        self._listeners.clear()
        self.open_conversation_id = None
        self.current = None
        self._pending_messages = []
        self.state = ViewState.IDLE

    def add_listener(self, listener: Callable[[], None]) -> Disposer:
        """Register a callback run after every accepted state change."""
        self._listeners.append(listener)

        def dispose() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return dispose

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception as e:
                logger.error(f"View listener failed: {e}")

    # -------------------------------------------------------------------------
    # REST loads
    # -------------------------------------------------------------------------

    async def load_conversations(self, facebook_page_ids: Optional[List[str]] = None) -> bool:
        """Replace the list summaries with the server's list."""
        try:
            items = await self.api.get_conversations(facebook_page_ids)
        except InboxAPIError as e:
            logger.warning(f"Failed to load conversations: {e}")
            self.transient_message = f"Could not load conversations: {e.user_message}"
            self._notify()
            return False

        self.conversations = OrderedDict((c.conversation_id, c) for c in items)
        self.transient_message = None
        self._notify()
        return True

    def conversation_list(self) -> List[Conversation]:
        return list(self.conversations.values())

    async def open_conversation(self, conversation_id: str) -> bool:
        """Show a conversation: fetch it and its transcript, then its page tags.

        On failure the view stays LOADING with a transient message; call
        ``retry()`` to try again.
        """
        if conversation_id != self.open_conversation_id:
            self._pending_messages = []
        self.open_conversation_id = conversation_id
        self.current = None
        self.messages = []
        self.tag_state = None
        self.tag_catalogue = []
        self.typing_users = set()
        self.transient_message = None
        self.state = ViewState.LOADING
        self._notify()

        try:
            conversation = await self.api.get_conversation(conversation_id)
            messages = await self.api.get_messages(conversation_id)
        except InboxAPIError as e:
            if self.open_conversation_id != conversation_id:
                return False
            logger.warning(f"Failed to load conversation {conversation_id}: {e}")
            self.transient_message = f"Could not load conversation: {e.user_message}"
            self._notify()
            return False

        if self.open_conversation_id != conversation_id:
            logger.debug(f"Dropping stale response for conversation {conversation_id}")
            return False

        self.current = conversation
        self.messages = self._merge_transcript(messages)
        self.tag_state = ConversationTagState(
            conversation_id=conversation_id, tag_ids=set(conversation.tags)
        )
        summary = self.conversations.get(conversation_id)
        if summary is not None:
            summary.apply_fields(conversation.model_dump())
        self.state = ViewState.READY
        self._notify()

        await self._load_tag_catalogue(conversation)
        return True

    async def _load_tag_catalogue(self, conversation: Conversation) -> None:
        page_id = conversation.facebook_page_id
        if not page_id:
            return
        try:
            catalogue = await self.tags.load_tags_for_page(page_id)
        except InboxAPIError as e:
            if self.open_conversation_id == conversation.conversation_id:
                logger.warning(f"Failed to load tags for page {page_id}: {e}")
                self.transient_message = f"Could not load tags: {e.user_message}"
                self._notify()
            return

        if self.open_conversation_id != conversation.conversation_id:
            return
        self.tag_catalogue = catalogue
        self._notify()

    async def retry(self) -> bool:
        """Re-run whatever load last failed for the open conversation."""
        if self.open_conversation_id is None:
            return False
        if self.state == ViewState.LOADING or self.current is None:
            return await self.open_conversation(self.open_conversation_id)
        self.transient_message = None
        await self._load_tag_catalogue(self.current)
        return self.transient_message is None

    # -------------------------------------------------------------------------
    # User actions
    # -------------------------------------------------------------------------

    def tag_view(self) -> List[TagView]:
        return tag_view(self.tag_catalogue, self.tag_state)

    async def toggle_tag(self, tag_id: str) -> bool:
        """Flip a tag on the open conversation (optimistic, no rollback)."""
        if self.state != ViewState.READY or self.tag_state is None or self.current is None:
            logger.debug(f"Ignoring tag toggle {tag_id}: no conversation ready")
            return False
        tag = next((t for t in self.tag_catalogue if t.tag_id == tag_id), None)
        if tag is None:
            logger.warning(f"Tag {tag_id} is not in the catalogue of the open conversation's page")
            return False

        conversation = self.current
        previous_order = list(conversation.tags)

        def on_change(state: ConversationTagState) -> None:
            ordered = state.ordered(previous_order)
            conversation.tags = ordered
            summary = self.conversations.get(state.conversation_id)
            if summary is not None:
                summary.tags = list(ordered)
            self._notify()

        return await self.tags.toggle_tag(
            self.tag_state, tag, on_change=on_change, current_order=previous_order
        )

    async def mark_read(self) -> bool:
        conversation_id = self.open_conversation_id
        if conversation_id is None:
            return False
        try:
            await self.api.mark_conversation_read(conversation_id)
        except InboxAPIError as e:
            logger.warning(f"Failed to mark conversation {conversation_id} read: {e}")
            self.transient_message = f"Could not mark conversation as read: {e.user_message}"
            self._notify()
            return False

        self._apply_to_conversation(
            conversation_id,
            {"is_read": True, "unread_customer_messages": 0, "needs_attention": False},
        )
        self._notify()
        return True

    # -------------------------------------------------------------------------
    # Merge helpers
    # -------------------------------------------------------------------------

    def _remember(self, message_id: str) -> bool:
        """Record a message id; return False if it was already seen."""
        if message_id in self._seen_messages:
            return False
        self._seen_messages[message_id] = None
        while len(self._seen_messages) > SEEN_MESSAGE_LIMIT:
            self._seen_messages.popitem(last=False)
        return True

    def _merge_transcript(self, messages: List[Message]) -> List[Message]:
        """REST transcript plus messages pushed while it was loading, deduplicated by id."""
        merged: List[Message] = []
        known: Set[str] = set()
        for message in list(messages) + self._pending_messages:
            if message.message_id in known:
                continue
            known.add(message.message_id)
            self._remember(message.message_id)
            merged.append(message)
        self._pending_messages = []
        return merged

    def _is_loading(self, conversation_id: str) -> bool:
        return conversation_id == self.open_conversation_id and self.current is None

    def _is_open(self, conversation_id: str) -> bool:
        return conversation_id == self.open_conversation_id and self.current is not None

    def _apply_to_conversation(self, conversation_id: str, fields: Dict[str, Any]) -> bool:
        """Apply fields to the summary and, if open, the working copy and tag state."""
        changed = False
        summary = self.conversations.get(conversation_id)
        if summary is not None:
            changed |= summary.apply_fields(fields)

        if self._is_open(conversation_id):
            changed |= self.current.apply_fields(fields)
            if fields.get("tags") is not None and self.tag_state is not None:
                before = set(self.tag_state.tag_ids)
                self.tags.apply_remote_tags(self.tag_state, fields["tags"])
                changed |= before != self.tag_state.tag_ids
            self.state = ViewState.READY
        return changed

    def _move_to_top(self, conversation_id: str) -> None:
        if conversation_id in self.conversations:
            self.conversations.move_to_end(conversation_id, last=False)

    # -------------------------------------------------------------------------
    # Realtime handlers
    # -------------------------------------------------------------------------

    def handle_conversation_updated(self, payload: Dict[str, Any]) -> None:
        try:
            update = ConversationUpdate.model_validate(payload)
            changed = self._apply_to_conversation(update.conversation_id, update.changes())
        except ValidationError as e:
            logger.warning(f"Ignoring malformed conversation_updated payload: {e}")
            return
        if changed:
            self._notify()

    def handle_new_message(self, payload: Dict[str, Any]) -> None:
        try:
            message = Message.model_validate(payload)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed new_message payload: {e}")
            return

        conversation_id = message.conversation_id
        if self._is_loading(conversation_id):
            # Held until the transcript arrives; not marked seen yet
            if all(m.message_id != message.message_id for m in self._pending_messages):
                self._pending_messages.append(message)
            return
        is_new = self._remember(message.message_id)
        snapshot = payload.get("conversation") if isinstance(payload, dict) else None

        try:
            if isinstance(snapshot, dict):
                fields = {k: v for k, v in snapshot.items() if k != "conversation_id"}
                if conversation_id not in self.conversations:
                    self.conversations[conversation_id] = Conversation.model_validate(
                        {**snapshot, "conversation_id": conversation_id}
                    )
                self._apply_to_conversation(conversation_id, fields)
            elif is_new:
                summary = self.conversations.get(conversation_id)
                if summary is not None:
                    preview: Dict[str, Any] = {
                        "last_message_text": message.text,
                        "last_message_at": message.sent_at,
                    }
                    if message.sender_type == "customer" and not self._is_open(conversation_id):
                        preview["is_read"] = False
                        preview["unread_customer_messages"] = summary.unread_customer_messages + 1
                    summary.apply_fields(preview)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed conversation snapshot in new_message: {e}")

        if not is_new:
            logger.debug(f"Skipping redelivered message {message.message_id}")
            return

        self._move_to_top(conversation_id)
        if self._is_open(conversation_id):
            self.messages.append(message)
            self.typing_users.clear()
            self.state = ViewState.READY
        self._notify()

    def handle_new_conversation(self, payload: Dict[str, Any]) -> None:
        try:
            conversation = Conversation.model_validate(payload)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed new_conversation payload: {e}")
            return
        if conversation.conversation_id in self.conversations:
            return
        self.conversations[conversation.conversation_id] = conversation
        self._move_to_top(conversation.conversation_id)
        self._notify()

    def handle_customer_updated(self, payload: Dict[str, Any]) -> None:
        customer_id = payload.get("customer_id") if isinstance(payload, dict) else None
        if not customer_id:
            logger.warning("Ignoring customer_updated payload without customer_id")
            return

        fields = {
            key: value for key, value in payload.items()
            if key.startswith("customer_") and key != "customer_id"
        }
        if "name" in payload and "customer_name" not in fields:
            fields["customer_name"] = payload["name"]
        if not fields:
            return

        changed = False
        try:
            for conversation_id, summary in self.conversations.items():
                if summary.customer_id == customer_id:
                    changed |= self._apply_to_conversation(conversation_id, fields)
            if (
                self.current is not None
                and self.current.customer_id == customer_id
                and self.open_conversation_id not in self.conversations
            ):
                changed |= self.current.apply_fields(fields)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed customer_updated payload: {e}")
            return
        if changed:
            self._notify()

    def handle_typing_indicator(self, payload: Dict[str, Any]) -> None:
        try:
            typing = TypingIndicator.model_validate(payload)
        except ValidationError:
            return
        if not self._is_open(typing.conversation_id):
            return
        before = set(self.typing_users)
        if typing.is_typing:
            self.typing_users.add(typing.user_id)
        else:
            self.typing_users.discard(typing.user_id)
        if before != self.typing_users:
            self._notify()

    def handle_messages_read(self, payload: Dict[str, Any]) -> None:
        try:
            read = MessagesRead.model_validate(payload)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed messages_read payload: {e}")
            return
        if not self._is_open(read.conversation_id):
            return
        ids = set(read.message_ids)
        changed = False
        for message in self.messages:
            if message.message_id in ids and not message.is_read:
                message.is_read = True
                changed = True
        if changed:
            self.state = ViewState.READY
            self._notify()

    def handle_conversation_escalated(self, payload: Dict[str, Any]) -> None:
        try:
            event = EscalationEvent.model_validate(payload)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed conversation_escalated payload: {e}")
            return

        fields: Dict[str, Any] = {
            "needs_attention": True,
            "current_handler": HandlerType.HUMAN,
        }
        if event.escalation_reason is not None:
            fields["escalation_reason"] = event.escalation_reason

        changed = event.conversation_id not in self.escalated_ids
        self.escalated_ids.add(event.conversation_id)
        changed |= self._apply_to_conversation(event.conversation_id, fields)
        if changed:
            logger.info(f"Conversation {event.conversation_id} escalated to a human: {event.escalation_reason}")
            self._notify()
