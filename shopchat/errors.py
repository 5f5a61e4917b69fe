from __future__ import annotations


class ShopChatError(Exception):
    """Base class for failures raised by shopchat components."""


class CatalogLoadError(ShopChatError):
    """Catalog source could not be read or parsed. Callers degrade to an empty catalog."""


class CompletionTransportError(ShopChatError):
    """HTTP failure, timeout or non-2xx reply from the completion service."""


class EmptyCompletionError(CompletionTransportError):
    """Completion succeeded on the wire but carried no usable text."""


class CompletionParseError(ShopChatError):
    """Normalizer reply was not the strict JSON object we asked for."""


class DeliveryError(ShopChatError):
    """Outbound message could not be delivered to the messaging platform."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
