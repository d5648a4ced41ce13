class HttpError(Exception):
    def __init__(self, status: int, reason: str, context: str):
        self.status = status
        self.reason = reason
        self.context = context

    def __str__(self):
        return f"Client error '{self.status} {self.reason}'. Context: {self.context}"


class S3ResponseError(HttpError):
    def __init__(
        self, status: int, reason: str, context: str, code: str, message: str = ""
    ):
        super().__init__(status, reason, context)
        self.code = code
        self.message = message

    def __str__(self):
        return (
            f"S3 error '{self.status} {self.reason}' ({self.code}: {self.message}). "
            f"Context: {self.context}"
        )


class IncompleteBodyError(Exception):
    def __init__(self, expected: int, received: int, context: str):
        self.expected = expected
        self.received = received
        self.context = context

    def __str__(self):
        return (
            f"Body length mismatch: expected {self.expected} bytes, "
            f"received {self.received}. Context: {self.context}"
        )


class CredentialsError(Exception):
    def __init__(self, errors: list[str]):
        self.errors = errors

    def __str__(self):
        return "No valid credentials found in chain: " + "; ".join(self.errors)


class RateLimitConfigError(ValueError):
    pass


class OperationCancelledError(Exception):
    def __init__(self, operation: str):
        self.operation = operation

    def __str__(self):
        return f"Operation {self.operation} cancelled"
