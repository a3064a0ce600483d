from .base import Base
from .message import DirectMessage

__all__ = ["Base", "DirectMessage"]
