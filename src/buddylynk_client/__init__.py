from buddylynk_client.calls import CallController, CallState, PeerConnection
from buddylynk_client.exceptions import (
    BuddylynkClientError,
    AuthenticationError,
    AuthorizationError,
    ValidationError,
    NotFoundError,
    ConflictError,
    RateLimitError,
    ServerError,
    NetworkError,
    SessionError,
    MediaAccessError,
)
from buddylynk_client.http import AsyncHTTPClient, BuddylynkClient, TokenAuthProvider
from buddylynk_client.inbox import Inbox
from buddylynk_client.presence import PresenceTracker
from buddylynk_client.session import ClientSocketSession, ReconnectPolicy, SessionState

__all__ = [
    "ClientSocketSession",
    "ReconnectPolicy",
    "SessionState",
    "CallController",
    "CallState",
    "PeerConnection",
    "PresenceTracker",
    "Inbox",
    "AsyncHTTPClient",
    "BuddylynkClient",
    "TokenAuthProvider",
    "BuddylynkClientError",
    "AuthenticationError",
    "AuthorizationError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "RateLimitError",
    "ServerError",
    "NetworkError",
    "SessionError",
    "MediaAccessError",
]
