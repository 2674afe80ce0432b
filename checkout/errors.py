from typing import Optional


class CheckoutError(Exception):
    """Base for every failure that ends up as a `{status, message}` response."""

    status_code = 500
    message = "checkout failed"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.message)
        if message:
            self.message = message


class ConfigurationError(CheckoutError):
    message = "shipping is not configured"


class ProviderError(CheckoutError):
    status_code = 502
    message = "shipping provider unavailable"


class EmptyCart(CheckoutError):
    status_code = 400
    message = "cart is empty"


class SelectionNotFound(CheckoutError):
    status_code = 400
    message = "shipping service not found"


class StockConflict(CheckoutError):
    status_code = 409
    message = "some items are no longer in stock, please review your cart and retry"

    def __init__(self, product_id: Optional[str] = None, message: Optional[str] = None):
        super().__init__(message)
        self.product_id = product_id


class PersistenceFailure(CheckoutError):
    message = "could not place the order, please try again"


class PaymentGatewayFailure(CheckoutError):
    status_code = 502
    message = "order saved, payment setup failed; retry payment or contact support"

    def __init__(self, order_code: str, message: Optional[str] = None):
        super().__init__(message)
        self.order_code = order_code


class OrderNotFound(CheckoutError):
    status_code = 404
    message = "order not found"


class PaymentNotRetryable(CheckoutError):
    status_code = 409
    message = "order is no longer awaiting payment"
