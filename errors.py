class InvalidParameter(ValueError):
    """Caller supplied a parameter that cannot be used for a query."""

    def __init__(self, name, value, reason):
        self.name = name
        self.value = value
        super().__init__(f"Invalid {name} {value!r}: {reason}")


class StorageUnavailable(Exception):
    """The database could not be reached; the request can be retried."""

    retriable = True
