# ----------------------------
# Error taxonomy
# ----------------------------
class StoreError(Exception):
    """Base class for errors raised by the checkout flow."""


class ValidationError(StoreError):
    # user-correctable input (shipping form, cart, coupon)
    def __init__(self, field: str, message: str):
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message


class InvalidAmountError(StoreError):
    pass


class GatewayError(StoreError):
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class SignatureError(StoreError):
    pass


class MalformedPayloadError(StoreError):
    pass


class NotificationError(StoreError):
    pass
