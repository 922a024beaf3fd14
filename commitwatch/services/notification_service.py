from abc import ABC, abstractmethod


class NotificationService(ABC):
    """Base class for notification sinks"""

    @abstractmethod
    async def send_message(self, message: str) -> None:
        """Deliver a message to the configured destination, raising if delivery failed"""

    async def close(self) -> None:
        """Release any transport resources"""
