from __future__ import annotations


class ServiceError(Exception):
    status_code = 500

    def __init__(self, message: str = "Service error") -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


class AuthorizationError(ServiceError):
    status_code = 403

    def __init__(self, message: str = "Access denied") -> None:
        super().__init__(message)


class NotFoundError(ServiceError):
    status_code = 404

    def __init__(self, message: str = "Not found") -> None:
        super().__init__(message)


class ValidationError(ServiceError):
    status_code = 400

    def __init__(self, errors: list[str] | str) -> None:
        if isinstance(errors, str):
            errors = [errors]
        self.errors = list(errors)
        super().__init__("Validation error : " + "; ".join(self.errors))


class FileError(ServiceError):
    UPLOAD_FAILED = "UPLOAD_FAILED"
    DOWNLOAD_FAILED = "DOWNLOAD_FAILED"
    DELETE_FAILED = "DELETE_FAILED"
    LIST_FAILED = "LIST_FAILED"
    INVALID_FILE_TYPE = "INVALID_FILE_TYPE"
    FILE_TOO_LARGE = "FILE_TOO_LARGE"

    def __init__(self, message: str, code: str = UPLOAD_FAILED) -> None:
        super().__init__(message)
        self.code = code
        self.status_code = 400 if code in (self.INVALID_FILE_TYPE, self.FILE_TOO_LARGE) else 500
