from __future__ import annotations


class ChatSyncError(Exception):
    """Root of every error raised by the synchronization engine."""


class AuthenticationFailure(ChatSyncError):
    """The gateway rejected the session credential. Terminal, never retried."""


class TransportDropped(ChatSyncError):
    """The persistent channel went away and could not be re-established."""


class SendFailed(ChatSyncError):
    """An outgoing message was not confirmed; it stays in the timeline for retry."""

    def __init__(self, temp_id: str, reason: str) -> None:
        self.temp_id = temp_id
        self.reason = reason
        super().__init__(f"message {temp_id} not delivered: {reason}")


class InvalidConversationReference(ChatSyncError):
    def __init__(self, conversation_id: str) -> None:
        self.conversation_id = conversation_id
        super().__init__(f"unknown conversation {conversation_id!r}")


class InvalidMessage(ChatSyncError):
    pass


class StoreError(ChatSyncError):
    def __init__(self, status: int, code: str, message: str) -> None:
        self.status = status
        self.code = code
        self.message = message
        super().__init__(f"store request failed ({status} {code}): {message}")


class MembershipViolation(ChatSyncError):
    """Rejected membership, admin or permission change. Never partially applied."""

    code = "membership_violation"


class AlreadyMember(MembershipViolation):
    code = "already_member"


class NotMember(MembershipViolation):
    code = "not_member"


class GroupFull(MembershipViolation):
    code = "group_full"


class NotGroupChat(MembershipViolation):
    code = "not_group_chat"


class PermissionDenied(MembershipViolation):
    code = "forbidden"


class InvalidParticipants(MembershipViolation):
    code = "invalid_participants"


class InvariantViolation(MembershipViolation):
    code = "invariant_violation"
