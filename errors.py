class StorefrontError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message

    def to_dict(self):
        payload = {"error": self.code}
        if self.message:
            payload["message"] = self.message
        return payload


class ValidationError(StorefrontError):
    status_code = 400
    code = "VALIDATION_ERROR"

    def __init__(self, fields, message: str = "Please correct the highlighted fields."):
        super().__init__(message)
        self.fields = dict(fields)

    def to_dict(self):
        payload = super().to_dict()
        payload["fields"] = self.fields
        return payload


class DuplicateOrderError(StorefrontError):
    status_code = 409
    code = "DUPLICATE_ORDER"

    def __init__(self, message: str = "An order is already in progress for this mobile number."):
        super().__init__(message)


class AuthenticationError(StorefrontError):
    status_code = 401
    code = "UNAUTHORIZED"

    def __init__(self, message: str = ""):
        super().__init__(message)


class NotFoundError(StorefrontError):
    status_code = 404
    code = "NOT_FOUND"


class StorageError(StorefrontError):
    status_code = 500
    code = "STORAGE_ERROR"

    def to_dict(self):
        # internal details stay in the log
        return {"error": self.code}


class NotifierError(StorefrontError):
    code = "NOTIFIER_ERROR"
