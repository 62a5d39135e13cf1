"""Typed failures raised by readers, the metadata store and the facade."""


class ChatContextError(Exception):
    """Base error for chat-context operations."""


class StoreConnectionFailure(ChatContextError):
    """A backing store is missing or cannot be opened."""

    def __init__(self, message: str, path: str = ""):
        super().__init__(message)
        self.path = path


class StoreLockedFailure(ChatContextError):
    """A backing store stayed busy after the bounded retries."""

    def __init__(self, message: str = "Database is locked by another process (likely Cursor)"):
        super().__init__(message)


class SessionNotFound(ChatContextError):
    def __init__(self, identifier: str):
        super().__init__(f"Session not found: {identifier}")
        self.identifier = identifier


class DataCorruption(ChatContextError):
    """Stored JSON for one session could not be decoded."""

    def __init__(self, message: str):
        super().__init__(f"Data corruption: {message}")


class NicknameConflict(ChatContextError):
    def __init__(self, nickname: str, owner: str):
        super().__init__(f"Nickname '{nickname}' is already in use by session {owner}")
        self.nickname = nickname
        self.owner = owner


class AmbiguousIdentifier(ChatContextError):
    """An id prefix or bare id matched more than one session or source."""

    def __init__(self, identifier: str, candidates: list[str]):
        super().__init__(
            f"Ambiguous session identifier '{identifier}' matches {len(candidates)} "
            f"sessions ({', '.join(candidates[:5])}). Please provide more characters "
            "or a source prefix."
        )
        self.identifier = identifier
        self.candidates = candidates
