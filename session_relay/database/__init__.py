from .chat_store import ChatStore, InMemoryChatStore, PostgresChatStore, create_chat_store

__all__ = ['ChatStore', 'InMemoryChatStore', 'PostgresChatStore', 'create_chat_store']
