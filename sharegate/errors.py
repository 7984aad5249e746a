"""Exception hierarchy for ShareGate."""


class ShareGateError(Exception):
    """Base class for all ShareGate errors."""


class ConfigError(ShareGateError):
    """Invalid or missing configuration. Fatal at startup only."""


class ChainRpcError(ShareGateError):
    """Transport or node error talking to a chain RPC endpoint.

    Always transient from the sync loop's point of view.
    """


class EventDecodeError(ShareGateError):
    """A chain event could not be decoded into a trade event."""


class InvalidSignatureError(ShareGateError):
    """A signature could not be decoded or no signer could be recovered."""


class TelegramApiError(ShareGateError):
    """The Telegram Bot API rejected a request or was unreachable."""

    def __init__(self, method: str, description: str, error_code: int = 0):
        super().__init__(f"{method} failed: {description}")
        self.method = method
        self.description = description
        self.error_code = error_code


class WatermarkError(ShareGateError):
    """The sync watermark could not be advanced; the batch is rolled back."""
