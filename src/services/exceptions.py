"""Shared exceptions for service layer operations."""


class TokenNotFoundError(Exception):
    """Raised when an API token ID does not exist."""

    def __init__(self, token_id: int) -> None:
        self.token_id = token_id
        super().__init__(f"Token not found: {token_id}")


class TokenAccessDeniedError(Exception):
    """Raised when a user manages a token they neither own nor administer."""

    def __init__(self, token_id: int) -> None:
        self.token_id = token_id
        super().__init__(f"Access denied to token: {token_id}")


class UserNotFoundError(Exception):
    """Raised when a user ID does not exist."""

    def __init__(self, user_id: int) -> None:
        self.user_id = user_id
        super().__init__(f"User not found: {user_id}")


class UsernameTakenError(Exception):
    """Raised when creating a user with a username that already exists."""

    def __init__(self, username: str) -> None:
        self.username = username
        super().__init__(f"Username already exists: {username}")


class InvalidCredentialsError(Exception):
    """
    Raised when a login fails.

    Covers unknown usernames, wrong passwords and inactive accounts alike so
    callers cannot tell them apart.
    """

    def __init__(self) -> None:
        super().__init__("Invalid credentials")


class AccountLockedError(Exception):
    """Raised when a login targets an account locked after repeated failures."""

    def __init__(self) -> None:
        super().__init__("Account is locked due to multiple failed attempts")
