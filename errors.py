"""error types raised by the service layer, rendered as {'error': ...} by app.py"""


class AppError(Exception):
    status_code = 500

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self):
        return {'error': self.message}


class ValidationError(AppError):
    status_code = 400


class AuthError(AppError):
    status_code = 401

    def __init__(self, message='Authentication required', forbidden=False):
        super().__init__(message, 403 if forbidden else 401)


class NotFoundError(AppError):
    status_code = 404


class ConflictError(AppError):
    # business-rule conflicts go out as 400, same as the storefront always did
    status_code = 400


class StaleVersionError(ConflictError):
    status_code = 409

    def __init__(self, expected, actual):
        super().__init__(f'Order was modified (expected version {expected}, found {actual})')
        self.expected = expected
        self.actual = actual


class DependencyFailure(AppError):
    status_code = 500

    def __init__(self, detail, message='Internal server error'):
        super().__init__(message)
        self.detail = detail
