from __future__ import annotations


class EngineError(Exception):
    code = "engine_error"
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, str]:
        return {"error": self.code, "detail": self.message}


class ReferenceNotFound(EngineError):
    code = "reference_not_found"
    status_code = 404


class PromoInvalid(EngineError):
    code = "promo_invalid"
    status_code = 422

    def __init__(self, reason: str, code_text: str | None = None):
        super().__init__(reason)
        self.reason = reason
        self.code_text = code_text


class ShippingUnavailable(EngineError):
    code = "shipping_unavailable"
    status_code = 503


class InvalidState(EngineError):
    code = "invalid_state"
    status_code = 409

    def __init__(self, message: str, current_status: str | None = None):
        super().__init__(message)
        self.current_status = current_status

    def to_dict(self) -> dict[str, str]:
        out = super().to_dict()
        if self.current_status is not None:
            out["current_status"] = self.current_status
        return out


class PaymentVerificationFailed(EngineError):
    code = "payment_verification_failed"
    status_code = 402


class PaymentNotConfirmed(PaymentVerificationFailed):
    """The rail has not (yet) confirmed the transaction; retrying later may succeed."""

    code = "payment_not_confirmed"


class OutOfStock(EngineError):
    code = "out_of_stock"
    status_code = 409


class ActionNotPermitted(EngineError):
    code = "action_not_permitted"
    status_code = 403
