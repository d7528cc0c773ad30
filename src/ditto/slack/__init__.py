from .client import ChatPlatform, SlackClient

__all__ = ["ChatPlatform", "SlackClient"]
