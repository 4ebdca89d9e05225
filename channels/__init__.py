"""Messaging clients for the external chat platform."""
from channels.base import MessagingClient, SendResult, ThroughputGovernor
from channels.telegram import TelegramBotClient

__all__ = [
    "MessagingClient", "SendResult", "ThroughputGovernor",
    "TelegramBotClient",
]
