from __future__ import annotations


class DuplicateInvitation(Exception):
    """A pending or active connection already exists between the pair."""


class AlreadyResolved(Exception):
    def __init__(self, invitation_id: str, status: str) -> None:
        self.invitation_id = invitation_id
        self.status = status
        super().__init__(f"invitation {invitation_id} is already {status}")


class InvitationNotFound(Exception):
    pass


class RoomNotFound(Exception):
    pass


class MessageNotFound(Exception):
    pass


class PermissionDenied(Exception):
    """The store refused a write because the caller lacks row access."""


class ConnectionTerminated(Exception):
    def __init__(self, thread: object) -> None:
        self.thread = thread
        super().__init__(f"connection for thread {thread} has ended")


class EmptyMessage(ValueError):
    pass


class MessageTooLong(ValueError):
    def __init__(self, length: int, limit: int) -> None:
        self.length = length
        self.limit = limit
        super().__init__(f"message is {length} characters, limit is {limit}")


class NetworkFailure(Exception):
    pass


class RateLimitExceeded(Exception):
    pass


class InvalidEvent(ValueError):
    pass
