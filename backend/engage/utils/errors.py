# /engage/utils/errors.py

# Domain errors raised inside the engine. Batch passes catch EngageError per
# row, log it and move on.


class EngageError(Exception):
    """Base class for engine errors."""


class JourneyNotFound(EngageError):
    pass


class WhatsAppNotConfigured(EngageError):
    pass


class WhatsAppSendError(EngageError):
    pass


class ShopifyAPIError(EngageError):
    pass
