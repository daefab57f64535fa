"""Conversation aggregate: membership, group settings and per-participant overlay state."""

from __future__ import annotations

import copy
import secrets
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from .constants import (
    DEFAULT_MAX_PARTICIPANTS,
    MAX_GROUP_DESCRIPTION_LENGTH,
    MAX_GROUP_NAME_LENGTH,
)
from .errors import (
    AlreadyMember,
    GroupFull,
    InvalidConversationReference,
    InvalidParticipants,
    InvariantViolation,
    NotGroupChat,
    NotMember,
    PermissionDenied,
)
from .models import now_ms

KIND_DIRECT = "direct"
KIND_GROUP = "group"


@dataclass
class GroupSettings:
    allow_members_to_add_others: bool = True
    allow_members_to_edit_info: bool = False
    only_admins_can_message: bool = False
    max_participants: int = DEFAULT_MAX_PARTICIPANTS
    disappearing_timer_s: int = 0


@dataclass
class GroupInfo:
    name: str = ""
    description: str = ""
    admins: List[str] = field(default_factory=list)
    settings: GroupSettings = field(default_factory=GroupSettings)


@dataclass
class ParticipantState:
    """View state one participant keeps on a conversation.

    Entries outlive membership: leaving only stamps ``left_at_ms``.
    """

    joined_at_ms: int
    last_seen_ms: int
    left_at_ms: Optional[int] = None
    archived_at_ms: Optional[int] = None
    muted_at_ms: Optional[int] = None
    muted_until_ms: Optional[int] = None
    pinned_at_ms: Optional[int] = None
    nickname: Optional[str] = None
    last_read_message_id: Optional[str] = None

    @property
    def archived(self) -> bool:
        return self.archived_at_ms is not None

    @property
    def pinned(self) -> bool:
        return self.pinned_at_ms is not None

    def is_muted(self, at_ms: int) -> bool:
        if self.muted_at_ms is None:
            return False
        return self.muted_until_ms is None or self.muted_until_ms > at_ms


@dataclass
class Conversation:
    conversation_id: str
    kind: str
    participants: List[str]
    created_by: str
    created_at_ms: int
    last_activity_ms: int
    group: Optional[GroupInfo] = None
    last_message_id: Optional[str] = None
    is_active: bool = True
    participant_state: Dict[str, ParticipantState] = field(default_factory=dict)

    @property
    def is_group(self) -> bool:
        return self.kind == KIND_GROUP

    def is_member(self, user_id: str) -> bool:
        return user_id in self.participants

    def is_admin(self, user_id: str) -> bool:
        if self.group is None:
            return False
        return user_id in self.group.admins

    def state_for(self, user_id: str) -> Optional[ParticipantState]:
        return self.participant_state.get(user_id)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Conversation":
        group_payload = payload.get("group")
        group = None
        if isinstance(group_payload, Mapping):
            settings_payload = group_payload.get("settings") or {}
            group = GroupInfo(
                name=str(group_payload.get("name") or ""),
                description=str(group_payload.get("description") or ""),
                admins=[str(a) for a in group_payload.get("admins") or []],
                settings=GroupSettings(**{k: v for k, v in settings_payload.items() if k in _SETTINGS_FIELDS}),
            )
        states = {}
        for user_id, state in (payload.get("participant_state") or {}).items():
            if isinstance(state, Mapping):
                states[str(user_id)] = ParticipantState(
                    **{k: v for k, v in state.items() if k in _STATE_FIELDS}
                )
        return cls(
            conversation_id=str(payload["conversation_id"]),
            kind=str(payload["kind"]),
            participants=[str(p) for p in payload.get("participants") or []],
            created_by=str(payload.get("created_by") or ""),
            created_at_ms=int(payload.get("created_at_ms") or 0),
            last_activity_ms=int(payload.get("last_activity_ms") or 0),
            group=group,
            last_message_id=payload.get("last_message_id"),
            is_active=bool(payload.get("is_active", True)),
            participant_state=states,
        )


_SETTINGS_FIELDS = set(GroupSettings.__dataclass_fields__)
_STATE_FIELDS = set(ParticipantState.__dataclass_fields__)


@dataclass
class ConversationFilters:
    """Tri-state filters for :meth:`ConversationStore.list_for_user`; ``None`` means don't care."""

    kind: Optional[str] = None
    archived: Optional[bool] = None
    muted: Optional[bool] = None
    pinned: Optional[bool] = None


def can_add_participants(conversation: Conversation, user_id: str) -> bool:
    if conversation.kind == KIND_DIRECT or conversation.group is None:
        return False
    if conversation.is_admin(user_id):
        return True
    return conversation.is_member(user_id) and conversation.group.settings.allow_members_to_add_others


def can_edit_metadata(conversation: Conversation, user_id: str) -> bool:
    if conversation.kind == KIND_DIRECT or conversation.group is None:
        return False
    if conversation.is_admin(user_id):
        return True
    return conversation.is_member(user_id) and conversation.group.settings.allow_members_to_edit_info


def can_post_messages(conversation: Conversation, user_id: str) -> bool:
    if not conversation.is_active or not conversation.is_member(user_id):
        return False
    if conversation.kind == KIND_DIRECT or conversation.group is None:
        return True
    if conversation.group.settings.only_admins_can_message:
        return conversation.is_admin(user_id)
    return True


def validate_conversation(conversation: Conversation) -> None:
    """Raise if ``conversation`` breaks a membership invariant."""

    participants = conversation.participants
    if len(set(participants)) != len(participants):
        raise InvariantViolation("participants must be unique")
    if conversation.kind == KIND_DIRECT:
        if len(participants) != 2:
            raise InvariantViolation("direct chats must have exactly 2 participants")
        if conversation.group is not None:
            raise InvariantViolation("direct chats carry no group info")
        return
    if conversation.kind != KIND_GROUP:
        raise InvariantViolation(f"unknown conversation kind {conversation.kind!r}")
    if conversation.group is None:
        raise InvariantViolation("group chats require group info")
    # A deactivated group may shrink below two members; its history stays readable.
    if conversation.is_active and len(participants) < 2:
        raise InvariantViolation("group chats must have at least 2 participants")
    if len(participants) > conversation.group.settings.max_participants:
        raise InvariantViolation("group exceeds its participant limit")
    if not set(conversation.group.admins) <= set(participants):
        raise InvariantViolation("all admins must be participants")
    if len(conversation.group.name) > MAX_GROUP_NAME_LENGTH:
        raise InvariantViolation(f"group name cannot exceed {MAX_GROUP_NAME_LENGTH} characters")
    if len(conversation.group.description) > MAX_GROUP_DESCRIPTION_LENGTH:
        raise InvariantViolation(f"group description cannot exceed {MAX_GROUP_DESCRIPTION_LENGTH} characters")


def display_name(conversation: Conversation, viewer_id: str, names: Mapping[str, str]) -> str:
    if conversation.group is not None:
        return conversation.group.name or "Unnamed Group"
    for participant in conversation.participants:
        if participant == viewer_id:
            continue
        state = conversation.participant_state.get(viewer_id)
        if state is not None and state.nickname:
            return state.nickname
        return names.get(participant, participant)
    return "Direct Chat"


def _new_conversation_id() -> str:
    return f"c_{secrets.token_hex(12)}"


class ConversationStore:
    """In-memory conversation store with validated, all-or-nothing writes."""

    def __init__(self, *, now_func: Callable[[], int] = now_ms, id_factory: Callable[[], str] = _new_conversation_id) -> None:
        self._now = now_func
        self._new_id = id_factory
        self._conversations: Dict[str, Conversation] = {}
        self._direct_index: Dict[frozenset, str] = {}

    def get(self, conversation_id: str) -> Conversation:
        return copy.deepcopy(self._require_conversation(conversation_id))

    def find(self, conversation_id: str) -> Optional[Conversation]:
        conversation = self._conversations.get(conversation_id)
        return copy.deepcopy(conversation) if conversation is not None else None

    def find_or_create_direct(self, user_a: str, user_b: str) -> Conversation:
        if not user_a or not user_b or user_a == user_b:
            raise InvalidParticipants("a direct chat needs two distinct users")
        key = frozenset((user_a, user_b))
        existing_id = self._direct_index.get(key)
        if existing_id is not None:
            existing = self.get(existing_id)
            if not existing.is_active:
                # reopening a closed direct chat brings its history back
                return self._commit(existing_id, lambda conversation: setattr(conversation, "is_active", True))
            return existing
        now = self._now()
        conversation = Conversation(
            conversation_id=self._new_id(),
            kind=KIND_DIRECT,
            participants=[user_a, user_b],
            created_by=user_a,
            created_at_ms=now,
            last_activity_ms=now,
            participant_state={
                user_a: ParticipantState(joined_at_ms=now, last_seen_ms=now),
                user_b: ParticipantState(joined_at_ms=now, last_seen_ms=now),
            },
        )
        validate_conversation(conversation)
        self._conversations[conversation.conversation_id] = conversation
        self._direct_index[key] = conversation.conversation_id
        return self.get(conversation.conversation_id)

    def create_group(
        self,
        creator_id: str,
        participants: Iterable[str],
        *,
        name: str = "",
        description: str = "",
        settings: GroupSettings | None = None,
    ) -> Conversation:
        members: List[str] = [creator_id]
        for user_id in participants:
            if user_id not in members:
                members.append(user_id)
        now = self._now()
        conversation = Conversation(
            conversation_id=self._new_id(),
            kind=KIND_GROUP,
            participants=members,
            created_by=creator_id,
            created_at_ms=now,
            last_activity_ms=now,
            group=GroupInfo(
                name=name.strip(),
                description=description.strip(),
                admins=[creator_id],
                settings=settings or GroupSettings(),
            ),
            participant_state={user_id: ParticipantState(joined_at_ms=now, last_seen_ms=now) for user_id in members},
        )
        if len(members) > conversation.group.settings.max_participants:
            raise GroupFull("group has reached maximum participant limit")
        validate_conversation(conversation)
        self._conversations[conversation.conversation_id] = conversation
        return self.get(conversation.conversation_id)

    def add_participant(self, conversation_id: str, user_id: str, actor_id: str) -> Conversation:
        def mutate(conversation: Conversation) -> None:
            self._require_group(conversation)
            if not can_add_participants(conversation, actor_id):
                raise PermissionDenied("not allowed to add participants")
            if conversation.is_member(user_id):
                raise AlreadyMember(f"{user_id} is already a participant")
            if len(conversation.participants) >= conversation.group.settings.max_participants:
                raise GroupFull("group has reached maximum participant limit")
            now = self._now()
            conversation.participants.append(user_id)
            state = conversation.participant_state.get(user_id)
            if state is None:
                conversation.participant_state[user_id] = ParticipantState(joined_at_ms=now, last_seen_ms=now)
            else:
                state.joined_at_ms = now
                state.left_at_ms = None

        return self._commit(conversation_id, mutate)

    def remove_participant(self, conversation_id: str, user_id: str, actor_id: str) -> Conversation:
        def mutate(conversation: Conversation) -> None:
            self._require_group(conversation)
            if not conversation.is_member(user_id):
                raise NotMember(f"{user_id} is not a participant")
            if actor_id != user_id and not conversation.is_admin(actor_id):
                raise PermissionDenied("only admins can remove other participants")
            conversation.participants.remove(user_id)
            state = conversation.participant_state.get(user_id)
            if state is not None:
                state.left_at_ms = self._now()
            if user_id in conversation.group.admins:
                conversation.group.admins.remove(user_id)
            if len(conversation.participants) < 2:
                conversation.is_active = False
            elif not conversation.group.admins:
                # the last admin left; the longest-standing member takes over
                conversation.group.admins.append(conversation.participants[0])

        return self._commit(conversation_id, mutate)

    def set_admin(self, conversation_id: str, user_id: str, actor_id: str) -> Conversation:
        def mutate(conversation: Conversation) -> None:
            self._require_group(conversation)
            self._require_admin(conversation, actor_id)
            if not conversation.is_member(user_id):
                raise NotMember(f"{user_id} is not a participant")
            if user_id not in conversation.group.admins:
                conversation.group.admins.append(user_id)

        return self._commit(conversation_id, mutate)

    def revoke_admin(self, conversation_id: str, user_id: str, actor_id: str) -> Conversation:
        def mutate(conversation: Conversation) -> None:
            self._require_group(conversation)
            self._require_admin(conversation, actor_id)
            if not conversation.is_member(user_id):
                raise NotMember(f"{user_id} is not a participant")
            if user_id in conversation.group.admins:
                conversation.group.admins.remove(user_id)

        return self._commit(conversation_id, mutate)

    def update_group_info(
        self,
        conversation_id: str,
        actor_id: str,
        *,
        name: str | None = None,
        description: str | None = None,
        settings: GroupSettings | None = None,
    ) -> Conversation:
        def mutate(conversation: Conversation) -> None:
            self._require_group(conversation)
            if not can_edit_metadata(conversation, actor_id):
                raise PermissionDenied("not allowed to edit group info")
            if settings is not None:
                self._require_admin(conversation, actor_id)
                conversation.group.settings = copy.deepcopy(settings)
            if name is not None:
                conversation.group.name = name.strip()
            if description is not None:
                conversation.group.description = description.strip()

        return self._commit(conversation_id, mutate)

    def archive(self, conversation_id: str, user_id: str) -> Conversation:
        return self._update_overlay(conversation_id, user_id, lambda s, now: setattr(s, "archived_at_ms", now))

    def unarchive(self, conversation_id: str, user_id: str) -> Conversation:
        return self._update_overlay(conversation_id, user_id, lambda s, now: setattr(s, "archived_at_ms", None))

    def mute(self, conversation_id: str, user_id: str, until_ms: int | None = None) -> Conversation:
        def apply(state: ParticipantState, now: int) -> None:
            state.muted_at_ms = now
            state.muted_until_ms = until_ms

        return self._update_overlay(conversation_id, user_id, apply)

    def unmute(self, conversation_id: str, user_id: str) -> Conversation:
        def apply(state: ParticipantState, now: int) -> None:
            state.muted_at_ms = None
            state.muted_until_ms = None

        return self._update_overlay(conversation_id, user_id, apply)

    def pin(self, conversation_id: str, user_id: str) -> Conversation:
        return self._update_overlay(conversation_id, user_id, lambda s, now: setattr(s, "pinned_at_ms", now))

    def unpin(self, conversation_id: str, user_id: str) -> Conversation:
        return self._update_overlay(conversation_id, user_id, lambda s, now: setattr(s, "pinned_at_ms", None))

    def set_nickname(self, conversation_id: str, user_id: str, nickname: str | None) -> Conversation:
        value = nickname.strip() if nickname else None
        return self._update_overlay(conversation_id, user_id, lambda s, now: setattr(s, "nickname", value or None))

    def mark_last_read(self, conversation_id: str, user_id: str, message_id: str) -> Conversation:
        def apply(state: ParticipantState, now: int) -> None:
            state.last_read_message_id = message_id
            state.last_seen_ms = now

        return self._update_overlay(conversation_id, user_id, apply)

    def touch(self, conversation_id: str, message_id: str, ts_ms: int) -> Conversation:
        def mutate(conversation: Conversation) -> None:
            conversation.last_message_id = message_id
            conversation.last_activity_ms = max(conversation.last_activity_ms, ts_ms)

        return self._commit(conversation_id, mutate)

    def deactivate(self, conversation_id: str) -> Conversation:
        return self._commit(conversation_id, lambda conversation: setattr(conversation, "is_active", False))

    def list_for_user(self, user_id: str, filters: ConversationFilters | None = None) -> List[Conversation]:
        filters = filters or ConversationFilters()
        now = self._now()
        matches = []
        for conversation in self._conversations.values():
            if not conversation.is_active or not conversation.is_member(user_id):
                continue
            if filters.kind is not None and conversation.kind != filters.kind:
                continue
            state = conversation.participant_state.get(user_id)
            archived = state.archived if state else False
            muted = state.is_muted(now) if state else False
            pinned = state.pinned if state else False
            if filters.archived is not None and archived != filters.archived:
                continue
            if filters.muted is not None and muted != filters.muted:
                continue
            if filters.pinned is not None and pinned != filters.pinned:
                continue
            matches.append(conversation)
        matches.sort(key=lambda c: c.last_activity_ms, reverse=True)
        return [copy.deepcopy(c) for c in matches]

    def search(self, user_id: str, query: str, limit: int = 10) -> List[Conversation]:
        needle = query.strip().lower()
        results = []
        for conversation in self.list_for_user(user_id):
            if conversation.group is None:
                continue
            haystack = f"{conversation.group.name}\n{conversation.group.description}".lower()
            if needle in haystack:
                results.append(conversation)
            if len(results) >= limit:
                break
        return results

    def _update_overlay(
        self,
        conversation_id: str,
        user_id: str,
        apply: Callable[[ParticipantState, int], None],
    ) -> Conversation:
        def mutate(conversation: Conversation) -> None:
            if not conversation.is_member(user_id):
                raise NotMember(f"{user_id} is not a participant")
            now = self._now()
            state = conversation.participant_state.get(user_id)
            if state is None:
                state = ParticipantState(joined_at_ms=conversation.created_at_ms, last_seen_ms=now)
                conversation.participant_state[user_id] = state
            apply(state, now)

        return self._commit(conversation_id, mutate)

    def _commit(self, conversation_id: str, mutate: Callable[[Conversation], None]) -> Conversation:
        current = self._require_conversation(conversation_id)
        draft = copy.deepcopy(current)
        mutate(draft)
        validate_conversation(draft)
        self._conversations[conversation_id] = draft
        return copy.deepcopy(draft)

    def _require_conversation(self, conversation_id: str) -> Conversation:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise InvalidConversationReference(conversation_id)
        return conversation

    @staticmethod
    def _require_group(conversation: Conversation) -> None:
        if conversation.kind != KIND_GROUP or conversation.group is None:
            raise NotGroupChat("operation requires a group chat")

    @staticmethod
    def _require_admin(conversation: Conversation, actor_id: str) -> None:
        if not conversation.is_admin(actor_id):
            raise PermissionDenied("forbidden")
