from .chat_service import ChatService, ChatServiceError, GeneratedMessage, HistoryEntry

__all__ = ["ChatService", "ChatServiceError", "GeneratedMessage", "HistoryEntry"]
