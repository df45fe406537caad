class BookingError(Exception):
    status_code = 400
    code = 'booking_error'

    def __init__(self, message='', **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def as_dict(self):
        payload = {'error': self.message, 'code': self.code}
        if self.details:
            payload['details'] = self.details
        return payload


class ValidationError(BookingError):
    status_code = 400
    code = 'validation_error'


class NotFoundError(BookingError):
    status_code = 404
    code = 'not_found'


class StateConflictError(BookingError):
    status_code = 409
    code = 'state_conflict'

    def __init__(self, current, requested, message=''):
        message = message or f"Cannot move booking from '{current}' to '{requested}'"
        super().__init__(message, current=current, requested=requested)
        self.current = current
        self.requested = requested


class QuoteExpiredError(BookingError):
    status_code = 409
    code = 'quote_expired'


class SignatureVerificationError(BookingError):
    status_code = 401
    code = 'invalid_signature'


class DuplicateTransactionError(BookingError):
    """Raised internally when a transaction id is already bound to a booking."""
    status_code = 200
    code = 'duplicate_transaction'

    def __init__(self, transaction_id, booking=None):
        super().__init__(f'Transaction {transaction_id} already processed', transaction_id=transaction_id)
        self.transaction_id = transaction_id
        self.booking = booking


class GatewayUnavailableError(BookingError):
    status_code = 503
    code = 'gateway_unavailable'


class LockTimeoutError(BookingError):
    status_code = 202
    code = 'retry_later'

    def __init__(self, key):
        super().__init__('Another request is processing this booking, please retry shortly', key=key)
        self.key = key
